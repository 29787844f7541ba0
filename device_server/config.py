"""
Device Authorization Server configuration (RFC 8628 device code flow).
No secrets in this file; client secrets come from env and are stored hashed.
"""
import os

# Public base URL of this service (used in metadata)
ISSUER = os.environ.get("DEVICE_ISSUER", "http://127.0.0.1:9100").rstrip("/")

# Page on the second screen where the user types the user code
VERIFICATION_URI = os.environ.get("DEVICE_VERIFICATION_URI", "http://127.0.0.1:9100/activate")

# Device code lifetime (seconds). RFC 8628 suggests 10 minutes
DEVICE_CODE_EXPIRES_IN = int(os.environ.get("DEVICE_CODE_EXPIRES_IN", "600"))

# Minimum seconds between polls; advisory only, not enforced server-side
POLL_INTERVAL = int(os.environ.get("DEVICE_POLL_INTERVAL", "5"))

# expires_in reported with delivered tokens (the identity provider's access token lifetime)
TOKEN_EXPIRES_IN = int(os.environ.get("DEVICE_TOKEN_EXPIRES_IN", "3600"))

# How many code pairs to try before giving up on a collision streak
CODE_MAX_ATTEMPTS = int(os.environ.get("DEVICE_CODE_MAX_ATTEMPTS", "5"))

ALLOWED_SCOPES = {"openid", "email", "profile", "phone", "offline_access"}
DEFAULT_SCOPE = os.environ.get("DEVICE_DEFAULT_SCOPE", "openid email profile")

# SQLite for development; the clients and audit tables always live here
DATABASE_URL = os.environ.get("DEVICE_DATABASE_URL", "sqlite:///./device_server.db")

# Where in-flight device codes live: "sql" (DATABASE_URL) or "memory" (single process only)
STORE_BACKEND = os.environ.get("DEVICE_STORE_BACKEND", "sql").strip().lower()

# External identity provider that issued the bearer tokens sent to /device/authorize
IDP_ISSUER = os.environ.get("IDP_ISSUER", "http://127.0.0.1:9000").rstrip("/")
IDP_JWKS_URI = os.environ.get("IDP_JWKS_URI", f"{IDP_ISSUER}/.well-known/jwks.json")
# Optional checks; unset means the claim is not verified
IDP_AUDIENCE = os.environ.get("IDP_AUDIENCE", "").strip() or None
IDP_CLIENT_ID = os.environ.get("IDP_CLIENT_ID", "").strip() or None
# Bound on the JWKS fetch; a timeout surfaces as a retryable server_error
IDP_TIMEOUT_SECONDS = int(os.environ.get("IDP_TIMEOUT_SECONDS", "5"))

# Rate limiting: per-IP, per minute. Polling is not limited.
RATE_LIMIT_CODE_PER_MINUTE = int(os.environ.get("DEVICE_RATE_LIMIT_CODE_PER_MINUTE", "30"))
RATE_LIMIT_AUTHORIZE_PER_MINUTE = int(os.environ.get("DEVICE_RATE_LIMIT_AUTHORIZE_PER_MINUTE", "20"))
