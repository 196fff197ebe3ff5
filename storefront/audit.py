"""Admin audit trail and tenant moderation."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.errors import Conflict, Forbidden, NotFound
from storefront.models import AdminAction, AdminActivityLog, Store
from storefront.periods import utcnow
from storefront.tenancy import PLATFORM_ROLE, PlatformScope, has_role

logger = logging.getLogger(__name__)


class AuditSink:
    """Append-only admin activity log. A failed write never fails the caller."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.clock = clock

    def log(
        self,
        actor_id: int,
        action: AdminAction,
        target_type: str,
        target_id: str,
        message: str,
        metadata: Optional[dict] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        try:
            self.db.add(
                AdminActivityLog(
                    admin_id=actor_id,
                    action=action.value,
                    target_type=target_type,
                    target_id=str(target_id),
                    description=message,
                    metadata_json=metadata,
                    ip_address=ip,
                    user_agent=user_agent,
                    created_at=self.clock(),
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("failed to record admin activity %s on %s %s", action.value, target_type, target_id)


class StoreModeration:
    def __init__(
        self,
        db: Session,
        scope: PlatformScope,
        audit: Optional[AuditSink] = None,
    ) -> None:
        if not isinstance(scope, PlatformScope) or not has_role(scope.role, PLATFORM_ROLE):
            raise Forbidden("store moderation requires an administrator")
        self.db = db
        self.scope = scope
        self.audit = audit or AuditSink(db)

    def suspend(self, store_id: int, reason: Optional[str] = None, **request_info: Any) -> Store:
        store = self._store(store_id)
        if not store.is_active:
            raise Conflict("store is already suspended")
        store.is_active = False
        store.suspension_reason = reason
        self.db.commit()
        message = f"Suspended store: {store.name}" + (f". Reason: {reason}" if reason else "")
        self._record(AdminAction.STORE_SUSPENDED, store, message, {"reason": reason}, request_info)
        return store

    def activate(self, store_id: int, **request_info: Any) -> Store:
        store = self._store(store_id)
        if store.is_active:
            raise Conflict("store is already active")
        store.is_active = True
        store.suspension_reason = None
        self.db.commit()
        self._record(AdminAction.STORE_ACTIVATED, store, f"Activated store: {store.name}", None, request_info)
        return store

    def verify(self, store_id: int, **request_info: Any) -> Store:
        store = self._store(store_id)
        if store.is_verified:
            raise Conflict("store is already verified")
        store.is_verified = True
        self.db.commit()
        self._record(AdminAction.STORE_VERIFIED, store, f"Verified store: {store.name}", None, request_info)
        return store

    def _store(self, store_id: int) -> Store:
        store = self.db.get(Store, store_id)
        if not store:
            raise NotFound("store not found")
        return store

    def _record(
        self,
        action: AdminAction,
        store: Store,
        message: str,
        metadata: Optional[dict],
        request_info: dict,
    ) -> None:
        logger.info("admin %s: %s store %s", self.scope.user_id, action.value, store.id)
        self.audit.log(
            self.scope.user_id,
            action,
            "store",
            str(store.id),
            message,
            metadata=metadata,
            ip=request_info.get("ip"),
            user_agent=request_info.get("user_agent"),
        )
