from functools import lru_cache
from typing import Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .settings import get_settings


class UnauthenticatedException(HTTPException):
    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


@lru_cache
def _jwks_client_for(url: str) -> jwt.PyJWKClient:
    # The fetched key set is cached on the client instance
    return jwt.PyJWKClient(url)


def get_jwks_client() -> jwt.PyJWKClient:
    settings = get_settings()
    if not settings.AUTH_JWKS_URL:
        raise UnauthenticatedException("Authentication is not configured")
    return _jwks_client_for(settings.AUTH_JWKS_URL)


async def verify_token(
    token: HTTPAuthorizationCredentials | None = Depends(HTTPBearer(auto_error=False)),
) -> dict[str, Any]:
    """Verify the identity provider's session token and return its claims."""
    settings = get_settings()

    if token is None:
        raise UnauthenticatedException

    jwks_client = get_jwks_client()

    # Look up the signing key by the token's 'kid'
    try:
        signing_key = jwks_client.get_signing_key_from_jwt(token.credentials).key
    except jwt.exceptions.PyJWKClientError as error:
        raise UnauthenticatedException(str(error))
    except jwt.exceptions.DecodeError as error:
        raise UnauthenticatedException(str(error))

    try:
        payload = jwt.decode(
            token.credentials,
            signing_key,
            algorithms=settings.auth_algorithms,
            audience=settings.AUTH_AUDIENCE,
            issuer=settings.AUTH_ISSUER,
            options={"verify_aud": settings.AUTH_AUDIENCE is not None},
        )
    except jwt.exceptions.InvalidTokenError as error:
        raise UnauthenticatedException(str(error))

    if not payload.get("sub"):
        raise UnauthenticatedException("Token has no subject")

    return payload
