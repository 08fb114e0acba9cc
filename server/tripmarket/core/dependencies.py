"""FastAPI dependencies for database, authentication, and idempotency."""

from typing import AsyncGenerator, Optional

import jwt
from fastapi import Depends, Header
from jwt import PyJWTError
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_async_session
from .exceptions import AuthenticationError, AuthorizationError, ValidationError

ROLE_USER = "user"
ROLE_ORGANIZER = "organizer"
ROLE_ADMIN = "admin"


class Requester(BaseModel):
    """Authenticated caller, as asserted by the bearer token."""

    user_id: str
    email: Optional[str] = None
    roles: list[str] = Field(default_factory=lambda: [ROLE_USER])

    def has_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)

    @property
    def is_admin(self) -> bool:
        return self.has_role(ROLE_ADMIN)

    def organizes(self, organizer_id: str) -> bool:
        """True when this caller is the organizer running a trip owned by ``organizer_id``."""
        return self.has_role(ROLE_ORGANIZER) and self.user_id == organizer_id


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency that provides async database sessions.

    Yields:
        AsyncSession: Database session
    """
    async for session in get_async_session():
        yield session


async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> Requester:
    """
    Authentication dependency that validates HS256 Bearer tokens.

    Args:
        authorization: Authorization header with Bearer token

    Returns:
        Requester: Identity and roles from the validated token

    Raises:
        AuthenticationError: If the token is missing, malformed, or invalid
    """
    if not authorization:
        raise AuthenticationError("Authorization header missing")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError("Invalid authorization header format")

    if scheme.lower() != "bearer":
        raise AuthenticationError("Invalid authentication scheme")

    try:
        # PyJWT rejects expired tokens itself when an exp claim is present
        payload = jwt.decode(token, settings.bearer_token_secret, algorithms=["HS256"])
    except PyJWTError as e:
        raise AuthenticationError(f"Token validation failed: {e}")

    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationError("Invalid token payload")

    roles = payload.get("roles") or [ROLE_USER]
    if isinstance(roles, str):
        roles = [roles]

    return Requester(user_id=str(user_id), email=payload.get("email"), roles=roles)


def require_roles(*roles: str):
    """Build a dependency that admits only requesters holding one of ``roles``."""

    async def _require(requester: Requester = Depends(get_current_user)) -> Requester:
        if not requester.has_role(*roles):
            raise AuthorizationError(required_roles=list(roles))
        return requester

    return _require


async def get_idempotency_key(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
) -> Optional[str]:
    """
    Extract and validate the idempotency key from request headers.

    Raises:
        ValidationError: If the key is longer than 255 characters
    """
    if not idempotency_key:
        return None

    if len(idempotency_key) > 255:
        raise ValidationError("Idempotency key must be between 1 and 255 characters")

    return idempotency_key


RequiredAuth = Depends(get_current_user)
StaffAuth = Depends(require_roles(ROLE_ORGANIZER, ROLE_ADMIN))
AdminAuth = Depends(require_roles(ROLE_ADMIN))
DatabaseSession = Depends(get_db)
IdempotencyKey = Depends(get_idempotency_key)
