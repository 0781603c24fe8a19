# backend/stockdb/security.py

"""
Security helpers for stockdb.

Responsibilities:
- JWT access token creation and decoding
- FastAPI dependency resolving the calling actor
- Role-based access helpers for router dependencies

Users are managed by an upstream identity service. Tokens carry the actor
id in `sub` and its roles in `roles`; the actor id is what lands in
ledger entries and sync runs for attribution.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, Iterable, Optional, Set, Union

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------

# In production, ALWAYS override these via environment variables.
SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_ME_IN_PRODUCTION")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

try:
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(
        os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60")
    )
except ValueError:
    ACCESS_TOKEN_EXPIRE_MINUTES = 60

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class ActorRole(str, enum.Enum):
    ADMIN = "ADMIN"
    STOCK_MANAGER = "STOCK_MANAGER"
    ORDER_SERVICE = "ORDER_SERVICE"
    SYNC_OPERATOR = "SYNC_OPERATOR"
    VIEWER = "VIEWER"


@dataclass(frozen=True)
class Actor:
    id: str
    roles: FrozenSet[ActorRole] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ActorRole.ADMIN in self.roles


# ---------------------------------------------------------------------------
# JWT TOKENS
# ---------------------------------------------------------------------------


def create_access_token(
    *,
    actor_id: str,
    roles: Iterable[Union[ActorRole, str]] = (),
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed JWT for `actor_id` holding the given roles."""
    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {
        "sub": str(actor_id),
        "roles": [ActorRole(r).value for r in roles],
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def _parse_roles(raw) -> FrozenSet[ActorRole]:
    roles: Set[ActorRole] = set()
    for value in raw or ():
        try:
            roles.add(ActorRole(value))
        except ValueError:
            # Roles issued for other services are ignored.
            continue
    return frozenset(roles)


# ---------------------------------------------------------------------------
# FASTAPI DEPENDENCIES
# ---------------------------------------------------------------------------


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """
    Decode the JWT access token and return the calling actor.

    The token is expected to contain a `sub` claim with the actor id.
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise _credentials_exception()

    actor_id = payload.get("sub")
    if not actor_id:
        raise _credentials_exception()
    return Actor(id=str(actor_id), roles=_parse_roles(payload.get("roles")))


# ---------------------------------------------------------------------------
# ROLE-BASED ACCESS HELPER
# ---------------------------------------------------------------------------


def require_roles(
    *allowed_roles: Union[ActorRole, str],
) -> Callable[[Actor], Actor]:
    """
    Dependency factory to enforce that the actor holds one of the given roles.

    Usage:
        @router.post(...)
        def endpoint(actor: Actor = Depends(require_roles("STOCK_MANAGER"))):
            ...

    ADMIN always passes, even if not explicitly listed in `allowed_roles`.
    """
    normalised_roles: Set[ActorRole] = set()
    for r in allowed_roles:
        try:
            normalised_roles.add(ActorRole(r))
        except ValueError:
            raise ValueError(f"Unknown role {r!r} passed to require_roles()")

    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.is_admin:
            return actor
        if not (actor.roles & normalised_roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions for this operation",
            )
        return actor

    return dependency
