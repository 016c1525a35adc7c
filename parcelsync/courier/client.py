"""Courier API client - Direct HTTP communication with the courier REST API."""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..const import (
    API_ADMIN_ASSIGN_AGENT_ENDPOINT,
    API_ADMIN_PARCEL_ENDPOINT,
    API_AGENT_TRACKING_ENDPOINT,
    API_AUTH_ME_ENDPOINT,
    API_NOTIFICATION_MARK_ENDPOINT,
    API_NOTIFICATIONS_ENDPOINT,
    API_NOTIFICATIONS_MARK_ALL_ENDPOINT,
    API_PARCEL_STATUS_ENDPOINT,
    API_PARCEL_TRACKING_CODE_ENDPOINT,
    DEFAULT_API_URL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT,
    PARCEL_LIST_ENDPOINTS,
)
from ..exceptions import CourierApiError

_LOGGER = logging.getLogger(__name__)

# Retry configuration
RETRY_DELAY_BASE = 2  # Base delay in seconds for exponential backoff


def _clean_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """Drop empty query values; aiohttp only accepts str/int/float."""
    if not params:
        return None
    cleaned = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        cleaned[key] = str(value)
    return cleaned or None


class CourierClient:
    """Client for interacting with the courier REST API."""

    def __init__(
        self,
        access_token: str,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: str = DEFAULT_API_URL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        """Initialize courier client.

        Args:
            access_token: Bearer token of the signed-in user
            session: Optional aiohttp session (will create one per request if not provided)
            base_url: API base URL, e.g. ``https://host/api/v1``
            request_timeout: Total timeout of one attempt in seconds
            max_retries: Attempts made for transient network errors
        """
        self._session = session
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        self._base_url = base_url.rstrip("/")
        self._max_retries = max(1, max_retries)
        # Create timeout configuration
        self._timeout = aiohttp.ClientTimeout(
            total=request_timeout,
            connect=min(10, request_timeout),  # Connection timeout (including DNS)
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def _is_retryable_error(self, err: Exception) -> bool:
        """Check if an error is retryable (transient network error).

        HTTP error responses are never retried; a status update that reached
        the server must not be sent twice.
        """
        if isinstance(err, aiohttp.ClientResponseError):
            return False
        if isinstance(err, (aiohttp.ClientConnectionError, asyncio.TimeoutError)):
            return True
        if isinstance(err, aiohttp.ClientError):
            error_str = str(err).lower()
            if any(keyword in error_str for keyword in ['timeout', 'dns', 'connection', 'network', 'resolve']):
                return True
        return False

    @staticmethod
    async def _error_message(response: aiohttp.ClientResponse) -> str:
        try:
            body = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return response.reason or f"HTTP {response.status}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make HTTP request to the courier API with retry logic.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            endpoint: API endpoint path
            data: Request body data
            params: Query parameters

        Returns:
            Response envelope (``success``, ``data``, ``meta``, ``message``)

        Raises:
            CourierApiError: On HTTP errors, or network errors after retries exhausted
        """
        url = f"{self._base_url}{endpoint}"
        # Use provided session or create a temporary one
        use_temporary_session = self._session is None
        session = self._session or aiohttp.ClientSession()

        try:
            for attempt in range(self._max_retries):
                try:
                    async with session.request(
                        method,
                        url,
                        headers=self._headers,
                        json=data,
                        params=_clean_params(params),
                        timeout=self._timeout,
                    ) as response:
                        if response.status >= 400:
                            message = await self._error_message(response)
                            _LOGGER.error(
                                "Courier API %s %s failed with %s: %s",
                                method,
                                endpoint,
                                response.status,
                                message,
                            )
                            raise CourierApiError(message, status=response.status)
                        if response.status == 204:
                            return {}
                        result = await response.json(content_type=None)
                        # Success - return immediately
                        return result if isinstance(result, dict) else {"data": result}
                except (aiohttp.ClientError, asyncio.TimeoutError) as err:
                    if self._is_retryable_error(err) and attempt < self._max_retries - 1:
                        # Calculate exponential backoff delay
                        delay = RETRY_DELAY_BASE * (2 ** attempt)
                        _LOGGER.warning(
                            "Courier API request failed (attempt %d/%d): %s. Retrying in %d seconds...",
                            attempt + 1,
                            self._max_retries,
                            err,
                            delay,
                        )
                        await asyncio.sleep(delay)
                        continue
                    _LOGGER.error("Courier API request %s %s failed: %s", method, endpoint, err)
                    raise CourierApiError(f"Request to {endpoint} failed: {err}") from err
        finally:
            # Only close session if we created it (not if it was provided)
            if use_temporary_session:
                await session.close()

        raise CourierApiError(f"Request to {endpoint} failed")

    async def get_current_user(self) -> Dict[str, Any]:
        """Get the user the access token belongs to."""
        return await self._request("GET", API_AUTH_ME_ENDPOINT)

    async def fetch_parcels(
        self, scope: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Get one page of parcels.

        Args:
            scope: ``customer``, ``agent`` or ``admin``
            params: page, limit, status and other list filters

        Returns:
            Envelope with the parcel list in ``data`` and pagination in ``meta``
        """
        try:
            endpoint = PARCEL_LIST_ENDPOINTS[scope]
        except KeyError as err:
            raise ValueError(f"Unknown parcel list scope: {scope}") from err
        return await self._request("GET", endpoint, params=params)

    async def fetch_parcel_tracking(self, tracking_code: str) -> Dict[str, Any]:
        """Get parcel, status history and tracking points for a tracking code."""
        endpoint = API_PARCEL_TRACKING_CODE_ENDPOINT.format(tracking_code=tracking_code)
        return await self._request("GET", endpoint)

    async def update_parcel_status(
        self, parcel_id: str, status: str, note: Optional[str] = None
    ) -> Dict[str, Any]:
        """Move a parcel to a new status.

        Args:
            parcel_id: The parcel id
            status: Target status
            note: Optional note, required by the server for FAILED

        Returns:
            Envelope with the updated parcel in ``data``
        """
        data: Dict[str, Any] = {"status": status}
        if note:
            data["note"] = note
        endpoint = API_PARCEL_STATUS_ENDPOINT.format(parcel_id=parcel_id)
        return await self._request("POST", endpoint, data=data)

    async def send_tracking_point(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Report the agent position (``lat``, ``lng``, ``speed``, ``heading``)."""
        return await self._request("POST", API_AGENT_TRACKING_ENDPOINT, data=payload)

    async def fetch_notifications(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Get one page of notifications; ``meta.unreadCount`` is authoritative."""
        return await self._request("GET", API_NOTIFICATIONS_ENDPOINT, params=params)

    async def mark_notification(self, notification_id: str) -> Dict[str, Any]:
        """Mark a notification as read."""
        endpoint = API_NOTIFICATION_MARK_ENDPOINT.format(notification_id=notification_id)
        return await self._request("PATCH", endpoint)

    async def mark_all_notifications(self) -> Dict[str, Any]:
        """Mark all notifications as read."""
        return await self._request("PATCH", API_NOTIFICATIONS_MARK_ALL_ENDPOINT)

    async def assign_agent(self, parcel_id: str, agent_id: str) -> Dict[str, Any]:
        """Assign a parcel to an agent (admin only)."""
        endpoint = API_ADMIN_ASSIGN_AGENT_ENDPOINT.format(parcel_id=parcel_id)
        return await self._request("PATCH", endpoint, data={"agentId": agent_id})

    async def delete_parcel(self, parcel_id: str) -> Dict[str, Any]:
        """Delete a parcel (admin only)."""
        endpoint = API_ADMIN_PARCEL_ENDPOINT.format(parcel_id=parcel_id)
        return await self._request("DELETE", endpoint)

    async def test_connection(self) -> bool:
        """Test API connection by resolving the current user.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            await self.get_current_user()
            return True
        except CourierApiError:
            return False
