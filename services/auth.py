"""Principal provider: bearer token → authenticated :class:`Principal`.

Tokens are HS256 JWTs issued elsewhere on the platform; the ``id`` (or
``sub``) claim names the user, whose role is looked up in the store.
Verified principals are cached by token hash so hot paths skip the lookup.
"""

from __future__ import annotations

import hashlib
import logging
import time

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors.exceptions import AccessDeniedError, UnauthorizedError
from models.principal import Principal, UserRole
from services.doubt_store import DoubtStore

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class PrincipalAuthenticator:
    """Verify bearer tokens and resolve them to principals."""

    def __init__(
        self,
        store: DoubtStore,
        secret: str,
        algorithm: str = "HS256",
        cache_ttl: int = 300,
    ) -> None:
        self._store = store
        self._secret = secret
        self._algorithm = algorithm
        self._cache_ttl = cache_ttl
        self._cache: dict[str, tuple[Principal, float]] = {}

    async def authenticate(self, token: str | None) -> Principal:
        if not token:
            raise UnauthorizedError("Access token required")

        key = hashlib.sha256(token.encode()).hexdigest()
        cached = self._cache.get(key)
        now = time.time()
        if cached is not None:
            principal, expires_at = cached
            if now < expires_at:
                return principal
            del self._cache[key]

        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise UnauthorizedError("Token has expired")
        except jwt.InvalidTokenError:
            raise UnauthorizedError("Invalid token")

        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise UnauthorizedError("Invalid token payload")

        user = await self._store.get_user(str(user_id))
        if user is None:
            logger.warning("Token for unknown user %s", user_id)
            raise UnauthorizedError("Invalid token")

        try:
            role = UserRole(user.get("role"))
        except ValueError:
            raise AccessDeniedError(f"Role '{user.get('role')}' may not use this service")

        principal = Principal(id=str(user_id), role=role, name=user.get("name") or "")
        expires_at = now + self._cache_ttl
        if isinstance(claims.get("exp"), (int, float)):
            expires_at = min(expires_at, float(claims["exp"]))
        self._cache[key] = (principal, expires_at)
        return principal

    def clear_cache(self) -> None:
        self._cache.clear()


async def authenticate_token(token: str | None, authenticator: PrincipalAuthenticator) -> Principal:
    """Resolve a raw token (e.g. from a WebSocket query string)."""
    return await authenticator.authenticate(token)


async def get_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Principal:
    """FastAPI dependency: the authenticated caller for this request."""
    token = credentials.credentials if credentials else None
    authenticator: PrincipalAuthenticator = request.app.state.services.authenticator
    return await authenticator.authenticate(token)
