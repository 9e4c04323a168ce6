import tempfile
from pathlib import Path
from config.loader import get_config_loader

# Get the config loader instance
config = get_config_loader()

# Logging
LOG_LEVEL = config.get("LOG_LEVEL", "info")

# Backend API (all endpoints are relative to this base, e.g. /auth/login)
API_BASE_URL = config.get_url("API_BASE_URL", "http://localhost:3000/api")
CLIENT_ID = config.get("CLIENT_ID", "web-client")
OAUTH2_CLIENT_ID = config.get("OAUTH2_CLIENT_ID", "oauth2-pkce-demo")

# Timeout configuration
# Connection timeout: Time to establish TCP connection
CONNECT_TIMEOUT = config.get("CONNECT_TIMEOUT", 10.0)
# Request timeout: Total timeout for a backend request
REQUEST_TIMEOUT = config.get("REQUEST_TIMEOUT", 30.0)

# Token lifecycle
# Proactive refresh fires this many seconds before the access token expires
REFRESH_BUFFER_SECONDS = config.get("REFRESH_BUFFER_SECONDS", 300)
# Claim validation warns when a token expires within this window
EXPIRY_WARNING_SECONDS = config.get("EXPIRY_WARNING_SECONDS", 300)

# PKCE
PKCE_VERIFIER_LENGTH = config.get("PKCE_VERIFIER_LENGTH", 128)
# Pending authorization data older than this is discarded
PKCE_MAX_AGE = config.get("PKCE_MAX_AGE", 600)

# Durable session storage
TOKEN_FILE = config.get_path("TOKEN_FILE", Path.home() / ".jwt-session-client" / "session.json")
# Short-lived storage for one authorization round-trip
PKCE_FILE = config.get_path("PKCE_FILE", Path(tempfile.gettempdir()) / "jwt_session_pkce.json")
