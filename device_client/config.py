"""
Device client configuration.
"""
import os

# Device Authorization Server base URL
DEVICE_SERVER_URL = os.environ.get("DEVICE_SERVER_URL", "http://127.0.0.1:9100").rstrip("/")

# Our client_id (must be registered at the device server)
CLIENT_ID = os.environ.get("DEVICE_CLIENT_ID", "device-client")

# Only for confidential clients; headsets and TVs are normally public
CLIENT_SECRET = os.environ.get("DEVICE_CLIENT_SECRET") or None

DEFAULT_SCOPE = os.environ.get("DEVICE_SCOPE", "openid email profile")

# Per-request HTTP timeout (seconds)
HTTP_TIMEOUT = float(os.environ.get("DEVICE_HTTP_TIMEOUT", "10"))
