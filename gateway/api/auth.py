"""Bearer identity verification.

The gateway only needs to know *who* is calling; session issuance lives
elsewhere. The default verifier accepts HS-signed JWTs and uses the ``sub``
claim as the caller id.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from gateway.api.context import current_request_context, request_context_ctx
from gateway.api.exceptions import AuthError

if TYPE_CHECKING:
    from gateway.config import AuthConfig

logger = logging.getLogger(__name__)

# auto_error=False so a missing header maps to our 401 payload, not FastAPI's 403
security = HTTPBearer(auto_error=False)


@runtime_checkable
class IdentityVerifier(Protocol):
    def verify(self, token: str) -> str:
        """Return the caller id for ``token`` or raise AuthError."""
        ...


class JWTIdentityVerifier:
    """Validates HS256/384/512 JWTs with PyJWT."""

    def __init__(self, config: AuthConfig) -> None:
        self._secret = config.jwt_secret
        self._audience = config.jwt_audience
        self._algorithm = config.jwt_algorithm

    def verify(self, token: str) -> str:
        options = {"require": ["sub", "exp"], "verify_aud": self._audience is not None}
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                options=options,
            )
        except jwt.ExpiredSignatureError:
            raise AuthError("Token has expired") from None
        except jwt.InvalidTokenError as err:
            logger.debug("jwt_validation_failed", extra={"error": str(err)})
            raise AuthError("Invalid authentication token") from err

        caller_id = payload.get("sub")
        if not isinstance(caller_id, str) or not caller_id.strip():
            raise AuthError("Token has no subject")
        return caller_id.strip()


def get_identity_verifier(request: Request) -> IdentityVerifier:
    return request.app.state.identity_verifier


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> str:
    """
    Dependency resolving the authenticated caller id.

    Also binds the caller onto the active request context so every later log
    record carries it.

    Raises:
        AuthError: Missing, malformed, expired or otherwise invalid token (401)
    """
    if credentials is None or not credentials.credentials:
        raise AuthError("Missing bearer token")

    caller_id = verifier.verify(credentials.credentials)

    context = current_request_context()
    if context is not None:
        request_context_ctx.set(context.with_caller(caller_id))
    return caller_id
