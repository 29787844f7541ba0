"""
Bearer verification against the external identity provider.
The second screen logs in with the IdP and sends us its access token; we only need the subject.
Validation via JWKS (PyJWKClient caches the key set).
"""
import logging
from abc import ABC, abstractmethod

import jwt
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientConnectionError

from device_server.config import (
    IDP_AUDIENCE,
    IDP_CLIENT_ID,
    IDP_ISSUER,
    IDP_JWKS_URI,
    IDP_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


class InvalidBearer(Exception):
    """Token is malformed, expired, wrongly signed, or for another audience/client."""


class VerifierUnavailable(Exception):
    """The IdP could not be reached in time; the caller may retry."""


class BearerVerifier(ABC):
    @abstractmethod
    def verify(self, token: str) -> str:
        """Return the subject identifier for a valid bearer token. Raises InvalidBearer."""


class JwksBearerVerifier(BearerVerifier):
    def __init__(
        self,
        jwks_uri: str,
        issuer: str,
        *,
        audience: str | None = None,
        client_id: str | None = None,
        timeout: int = 5,
    ):
        self.jwks_uri = jwks_uri
        self.issuer = issuer
        self.audience = audience
        self.client_id = client_id
        self.timeout = timeout
        self._jwks_client: PyJWKClient | None = None

    def get_jwks_client(self) -> PyJWKClient:
        if self._jwks_client is None:
            self._jwks_client = PyJWKClient(
                uri=self.jwks_uri,
                cache_jwk_set=True,
                lifespan=300,
                timeout=self.timeout,
            )
        return self._jwks_client

    def verify(self, token: str) -> str:
        if not token:
            raise InvalidBearer("empty token")
        try:
            signing_key = self.get_jwks_client().get_signing_key_from_jwt(token)
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                issuer=self.issuer,
                audience=self.audience,
                options={"verify_exp": True, "verify_iss": True, "verify_aud": self.audience is not None},
            )
        except PyJWKClientConnectionError as e:
            logger.warning("JWKS fetch from %s failed: %s", self.jwks_uri, e)
            raise VerifierUnavailable("identity provider unreachable") from e
        except jwt.PyJWTError as e:
            logger.debug("Bearer verification failed: %s", e)
            raise InvalidBearer(str(e)) from e

        # Access tokens without aud (e.g. Cognito) carry the app client in client_id
        if self.client_id is not None and payload.get("client_id") != self.client_id:
            raise InvalidBearer("token issued to another client")
        sub = payload.get("sub")
        if not sub:
            raise InvalidBearer("token has no subject")
        return str(sub)


_default_verifier: JwksBearerVerifier | None = None


def get_verifier() -> BearerVerifier:
    """Dependency: the configured IdP verifier (shared so the JWK set cache survives requests)."""
    global _default_verifier
    if _default_verifier is None:
        _default_verifier = JwksBearerVerifier(
            IDP_JWKS_URI,
            IDP_ISSUER,
            audience=IDP_AUDIENCE,
            client_id=IDP_CLIENT_ID,
            timeout=IDP_TIMEOUT_SECONDS,
        )
    return _default_verifier
