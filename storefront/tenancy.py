"""Request scoping: who is calling, and which tenant's rows they may touch.

Every tenant-scoped service takes a ``TenantScope`` and filters on its
``store_id``. Only ``PlatformScope`` (admin roles) may aggregate across
stores.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.config import Settings
from storefront.errors import Forbidden, Unauthenticated
from storefront.models import Role, Store, User

logger = logging.getLogger(__name__)

ROLE_GRANTS: dict[Role, frozenset[Role]] = {
    Role.STORE_OWNER: frozenset({Role.STORE_OWNER}),
    Role.ADMIN: frozenset({Role.ADMIN}),
    Role.SUPER_ADMIN: frozenset({Role.SUPER_ADMIN, Role.ADMIN}),
}

PLATFORM_ROLE = Role.ADMIN


def has_role(role: Role, required: Role) -> bool:
    return required in ROLE_GRANTS.get(role, frozenset())


def parse_role(value: Optional[str]) -> Optional[Role]:
    try:
        return Role(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: Role


@dataclass(frozen=True)
class TenantScope:
    store_id: int
    user_id: int
    role: Role


@dataclass(frozen=True)
class PlatformScope:
    user_id: int
    role: Role
    all_tenants: bool = True


def extract_credential(authorization: Optional[str], cookie: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    if cookie:
        return cookie
    return None


def verify_token(token: str, settings: Settings) -> Optional[dict]:
    """Return the token's claims, or None when the signature or expiry is invalid."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None


class TenantContextResolver:
    def __init__(self, db: Session, settings: Settings) -> None:
        self.db = db
        self.settings = settings

    def identify(self, token: Optional[str]) -> Identity:
        if not token:
            raise Unauthenticated("missing credential")
        claims = verify_token(token, self.settings)
        if not claims:
            logger.warning("rejected bearer credential: invalid or expired")
            raise Unauthenticated("invalid credential")
        try:
            user_id = int(claims.get("sub") or claims.get("userId"))
        except (TypeError, ValueError):
            raise Unauthenticated("invalid credential")
        user = self.db.get(User, user_id)
        if not user or not user.is_active:
            raise Unauthenticated("invalid credential")
        role = parse_role(user.role)
        if role is None:
            raise Unauthenticated("invalid credential")
        return Identity(user_id=user.id, role=role)

    def resolve_tenant(self, token: Optional[str]) -> TenantScope:
        identity = self.identify(token)
        store = self.db.scalars(select(Store).where(Store.owner_id == identity.user_id)).first()
        if not store or not store.is_active:
            raise Unauthenticated("no active store for this account")
        return TenantScope(store_id=store.id, user_id=identity.user_id, role=identity.role)

    def resolve_platform(self, token: Optional[str], required: Role = PLATFORM_ROLE) -> PlatformScope:
        identity = self.identify(token)
        if not has_role(identity.role, required):
            logger.warning(
                "user %s with role %s denied platform scope", identity.user_id, identity.role.value
            )
            raise Forbidden("insufficient role")
        return PlatformScope(user_id=identity.user_id, role=identity.role)
