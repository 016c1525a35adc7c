"""Configuration for the parcelsync client."""

import logging
import os
import re
from typing import Any, Mapping, Optional

import voluptuous as vol

from .const import (
    CONF_ACCESS_TOKEN,
    CONF_API_URL,
    CONF_DROP_PIN_TIMEOUT,
    CONF_LOCATION_MIN_INTERVAL,
    CONF_MAX_RETRIES,
    CONF_NOTIFICATION_LIMIT,
    CONF_NOTIFICATION_PAGE_SIZE,
    CONF_POLL_INTERVAL,
    CONF_REQUEST_TIMEOUT,
    CONF_SOCKET_URL,
    CONF_TRACKING_HISTORY_LIMIT,
    DEFAULT_API_URL,
    DEFAULT_DROP_PIN_TIMEOUT,
    DEFAULT_LOCATION_MIN_INTERVAL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_NOTIFICATION_LIMIT,
    DEFAULT_NOTIFICATION_PAGE_SIZE,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_TRACKING_HISTORY_LIMIT,
    ENV_PREFIX,
)
from .exceptions import InvalidConfig

_LOGGER = logging.getLogger(__name__)

_API_SUFFIX = re.compile(r"/api(/v1)?$")

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_ACCESS_TOKEN): vol.All(str, vol.Length(min=1)),
        vol.Optional(CONF_API_URL, default=DEFAULT_API_URL): vol.Url(),
        vol.Optional(CONF_SOCKET_URL): vol.Any(None, vol.Url()),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=1)
        ),
        vol.Optional(CONF_MAX_RETRIES, default=DEFAULT_MAX_RETRIES): vol.All(
            vol.Coerce(int), vol.Range(min=1, max=10)
        ),
        vol.Optional(
            CONF_TRACKING_HISTORY_LIMIT, default=DEFAULT_TRACKING_HISTORY_LIMIT
        ): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional(CONF_NOTIFICATION_LIMIT, default=DEFAULT_NOTIFICATION_LIMIT): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(
            CONF_NOTIFICATION_PAGE_SIZE, default=DEFAULT_NOTIFICATION_PAGE_SIZE
        ): vol.All(vol.Coerce(int), vol.Range(min=1, max=100)),
        vol.Optional(
            CONF_LOCATION_MIN_INTERVAL, default=DEFAULT_LOCATION_MIN_INTERVAL
        ): vol.All(vol.Coerce(float), vol.Range(min=0)),
        vol.Optional(CONF_DROP_PIN_TIMEOUT, default=DEFAULT_DROP_PIN_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0, min_included=False)
        ),
        vol.Optional(CONF_POLL_INTERVAL, default=DEFAULT_POLL_INTERVAL): vol.All(
            vol.Coerce(float), vol.Range(min=1)
        ),
    }
)


def api_origin(api_url: str) -> str:
    """Return the server origin for an API base URL.

    The realtime endpoint lives on the origin, so ``http://host/api/v1``
    becomes ``http://host``.
    """
    return _API_SUFFIX.sub("", api_url.rstrip("/"))


def validate_config(data: Mapping[str, Any]) -> dict[str, Any]:
    """Validate raw settings and fill in defaults.

    Raises:
        InvalidConfig: If any setting is missing or malformed
    """
    try:
        config = CONFIG_SCHEMA(dict(data))
    except vol.Invalid as err:
        raise InvalidConfig(str(err)) from err

    config[CONF_API_URL] = config[CONF_API_URL].rstrip("/")
    socket_url = config.get(CONF_SOCKET_URL)
    if socket_url:
        config[CONF_SOCKET_URL] = socket_url.rstrip("/")
    else:
        config[CONF_SOCKET_URL] = api_origin(config[CONF_API_URL])
    return config


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """Build the client configuration from the environment.

    Every key of ``CONFIG_SCHEMA`` can be set through an upper-cased
    ``PARCELSYNC_`` variable, e.g. ``PARCELSYNC_API_URL``. Explicit
    ``overrides`` win over the environment.
    """
    environ = os.environ if environ is None else environ
    data: dict[str, Any] = {}
    for marker in CONFIG_SCHEMA.schema:
        key = str(marker)
        value = environ.get(f"{ENV_PREFIX}{key.upper()}")
        if value not in (None, ""):
            data[key] = value
    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    if CONF_API_URL not in data:
        _LOGGER.warning("No API URL configured, using %s", DEFAULT_API_URL)
    return validate_config(data)
