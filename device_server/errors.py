"""
Error taxonomy for the device flow.

Service errors (DeviceFlowError subclasses) say what went wrong in domain terms.
OAuthError is the wire form: status code + RFC 6749/8628 error code + description,
rendered as top-level JSON by the handler registered in main.py.
"""
from fastapi import Request
from fastapi.responses import JSONResponse

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class DeviceFlowError(Exception):
    pass


class InvalidRequest(DeviceFlowError):
    """Caller error: malformed or missing parameter."""


class InvalidClient(InvalidRequest):
    """Unknown client_id."""


class InvalidScope(InvalidRequest):
    pass


class NotFound(DeviceFlowError):
    """No live record for this code."""


class ExpiredCode(DeviceFlowError):
    pass


class AlreadyActedOn(DeviceFlowError):
    """Record already authorized or denied."""


class Unauthenticated(DeviceFlowError):
    """Bearer credential rejected by the identity provider."""


class ServiceUnavailable(DeviceFlowError):
    """Store or identity provider failed; retryable."""


class CodeGenerationExhausted(ServiceUnavailable):
    pass


class OAuthError(Exception):
    def __init__(self, status_code: int, error: str, description: str, headers: dict[str, str] | None = None):
        super().__init__(f"{error}: {description}")
        self.status_code = status_code
        self.error = error
        self.description = description
        self.headers = headers or {}


def oauth_error_from(exc: DeviceFlowError) -> OAuthError:
    """Map a service error to its wire form. Internal detail never crosses this line."""
    if isinstance(exc, ServiceUnavailable):
        return OAuthError(500, "server_error", "Internal server error")
    if isinstance(exc, Unauthenticated):
        return OAuthError(401, "invalid_token", "Access token is invalid or expired", {"WWW-Authenticate": "Bearer"})
    if isinstance(exc, ExpiredCode):
        return OAuthError(400, "expired_token", str(exc) or "Code has expired")
    if isinstance(exc, (NotFound, AlreadyActedOn)):
        return OAuthError(400, "invalid_grant", str(exc) or "Invalid grant")
    if isinstance(exc, InvalidRequest):
        return OAuthError(400, "invalid_request", str(exc) or "Invalid request")
    return OAuthError(500, "server_error", "Internal server error")


def error_body(error: str, description: str) -> dict:
    return {"error": error, "error_description": description}


async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.error, exc.description),
        headers={**NO_STORE_HEADERS, **exc.headers},
    )
