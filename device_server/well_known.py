"""
Authorization server metadata (RFC 8414) advertising the device endpoints.
"""
from fastapi import APIRouter

from device_server.config import ALLOWED_SCOPES, ISSUER, VERIFICATION_URI

router = APIRouter()


@router.get("/.well-known/oauth-authorization-server")
def authorization_server_metadata():
    return {
        "issuer": ISSUER,
        "device_authorization_endpoint": f"{ISSUER}/device/code",
        "token_endpoint": f"{ISSUER}/device/token",
        "verification_uri": VERIFICATION_URI,
        "grant_types_supported": ["urn:ietf:params:oauth:grant-type:device_code"],
        "scopes_supported": sorted(ALLOWED_SCOPES),
        "token_endpoint_auth_methods_supported": ["none", "client_secret_basic", "client_secret_post"],
    }
