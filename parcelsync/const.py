"""Constants for the parcelsync client."""

DOMAIN = "parcelsync"
INTEGRATION_NAME = "Parcel Live Sync"

# Courier REST API Configuration
DEFAULT_API_URL = "http://localhost:5000/api"
API_AUTH_ME_ENDPOINT = "/auth/me"
API_PARCEL_STATUS_ENDPOINT = "/parcels/{parcel_id}/status"
API_PARCEL_TRACKING_CODE_ENDPOINT = "/parcels/tracking-code/{tracking_code}"
API_AGENT_TRACKING_ENDPOINT = "/agent/tracking"
API_CUSTOMER_PARCELS_ENDPOINT = "/parcels/my"
API_ADMIN_PARCELS_ENDPOINT = "/admin/parcels"
API_AGENT_PARCELS_ENDPOINT = "/agent/parcels"
API_ADMIN_PARCEL_ENDPOINT = "/admin/parcels/{parcel_id}"
API_ADMIN_ASSIGN_AGENT_ENDPOINT = "/admin/parcels/{parcel_id}/assign-agent"
API_NOTIFICATIONS_ENDPOINT = "/notifications"
API_NOTIFICATION_MARK_ENDPOINT = "/notifications/{notification_id}/mark"
API_NOTIFICATIONS_MARK_ALL_ENDPOINT = "/notifications/mark-all"

# List scopes, one per role dashboard
SCOPE_CUSTOMER = "customer"
SCOPE_AGENT = "agent"
SCOPE_ADMIN = "admin"

PARCEL_LIST_ENDPOINTS = {
    SCOPE_CUSTOMER: API_CUSTOMER_PARCELS_ENDPOINT,
    SCOPE_AGENT: API_AGENT_PARCELS_ENDPOINT,
    SCOPE_ADMIN: API_ADMIN_PARCELS_ENDPOINT,
}

# Realtime channel
SOCKET_PATH = "socket.io"
SOCKET_TRANSPORTS = ["websocket"]
SOCKET_CLIENT_MODULE = "socketio"

EVENT_CONNECT = "connect"
EVENT_DISCONNECT = "disconnect"
EVENT_PARCEL_STATUS = "parcel:status"
EVENT_PARCEL_TRACKING = "parcel:tracking"
EVENT_NOTIFICATION_USER = "notification:user"

ROOM_PARCEL = "join:parcel"
ROOM_USER = "join:user"
ROOM_CUSTOMER = "join:customer"
ROOM_AGENT = "join:agent"

# Retention limits
DEFAULT_TRACKING_HISTORY_LIMIT = 50
DEFAULT_NOTIFICATION_LIMIT = 100
DEFAULT_NOTIFICATION_PAGE_SIZE = 50

# Timing (seconds)
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_MAX_RETRIES = 3
DEFAULT_POLL_INTERVAL = 60  # REST-only fallback when realtime is unavailable
DEFAULT_LOCATION_MIN_INTERVAL = 5
DEFAULT_DROP_PIN_TIMEOUT = 20

# Route endpoint de-duplication, in degrees
COORDINATE_EPSILON = 1e-6

# Synthesized ids for locally originated history entries
LOCAL_ID_PREFIX = "live-"

# Config keys
CONF_API_URL = "api_url"
CONF_SOCKET_URL = "socket_url"
CONF_ACCESS_TOKEN = "access_token"
CONF_REQUEST_TIMEOUT = "request_timeout"
CONF_MAX_RETRIES = "max_retries"
CONF_TRACKING_HISTORY_LIMIT = "tracking_history_limit"
CONF_NOTIFICATION_LIMIT = "notification_limit"
CONF_NOTIFICATION_PAGE_SIZE = "notification_page_size"
CONF_LOCATION_MIN_INTERVAL = "location_min_interval"
CONF_DROP_PIN_TIMEOUT = "drop_pin_timeout"
CONF_POLL_INTERVAL = "poll_interval"

# Environment variables read by load_config
ENV_PREFIX = "PARCELSYNC_"

# Location reporter status values
LOCATION_IDLE = "idle"
LOCATION_WATCHING = "watching"
LOCATION_DENIED = "denied"
LOCATION_ERROR = "error"
LOCATION_UNSUPPORTED = "unsupported"
