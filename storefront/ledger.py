"""Tenant-owned income/expense ledger.

Every query carries ``store_id == scope.store_id``. A row owned by
another store is indistinguishable from a missing row.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from storefront.errors import NotFound, ValidationFailed
from storefront.models import (
    FinancialTransaction,
    FinancialTransactionTag,
    Order,
    PaymentStatus,
    Store,
    TransactionCategory,
    TransactionType,
)
from storefront.periods import as_utc, to_datetime, utcnow
from storefront.tenancy import TenantScope

logger = logging.getLogger(__name__)

SETTLEMENT_TAGS = ("order", "sale")


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    store_id: int
    type: TransactionType
    category: TransactionCategory
    amount: Decimal
    description: str
    reference: Optional[str]
    tags: tuple[str, ...]
    transaction_date: datetime
    is_recurring: bool
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.id,
            "type": self.type.value,
            "category": self.category.value,
            "amount": float(self.amount),
            "description": self.description,
            "reference": self.reference,
            "tags": list(self.tags),
            "transaction_date": self.transaction_date.isoformat(),
            "is_recurring": self.is_recurring,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class NewEntry:
    type: Any
    category: Any
    amount: Any
    description: Optional[str]
    reference: Optional[str] = None
    tags: Iterable[str] = ()
    transaction_date: Optional[datetime] = None
    is_recurring: bool = False


@dataclass(frozen=True)
class EntryPatch:
    """Fields left as None are unchanged; an empty reference clears it."""

    type: Any = None
    category: Any = None
    amount: Any = None
    description: Optional[str] = None
    reference: Optional[str] = None
    tags: Optional[Iterable[str]] = None
    transaction_date: Optional[datetime] = None
    is_recurring: Optional[bool] = None


@dataclass(frozen=True)
class LedgerFilters:
    type: Any = None
    category: Any = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Page:
    items: list
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def meta(self) -> dict:
        return {"page": self.page, "limit": self.limit, "total": self.total, "pages": self.pages}


def parse_enum(enum_cls: type[Enum], value: Any, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationFailed(f"invalid {field}: {value!r}")


def parse_amount(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationFailed("amount is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValidationFailed("amount must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationFailed("amount must be greater than 0")
    return amount


def normalize_tags(tags: Optional[Iterable[str]]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for tag in tags or ():
        cleaned = str(tag).strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return tuple(sorted(seen))


def _required_text(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationFailed(f"{field} is required")
    return cleaned


def apply_patch(entry: LedgerEntry, patch: EntryPatch, now: datetime) -> LedgerEntry:
    """Return ``entry`` with ``patch`` applied; ``entry`` itself is untouched."""
    changes: dict[str, Any] = {}
    if patch.type is not None:
        changes["type"] = parse_enum(TransactionType, patch.type, "type")
    if patch.category is not None:
        changes["category"] = parse_enum(TransactionCategory, patch.category, "category")
    if patch.amount is not None:
        changes["amount"] = parse_amount(patch.amount)
    if patch.description is not None:
        changes["description"] = _required_text(patch.description, "description")
    if patch.reference is not None:
        changes["reference"] = patch.reference.strip() or None
    if patch.tags is not None:
        changes["tags"] = normalize_tags(patch.tags)
    if patch.transaction_date is not None:
        changes["transaction_date"] = to_datetime(patch.transaction_date)
    if patch.is_recurring is not None:
        changes["is_recurring"] = patch.is_recurring
    if not changes:
        return entry
    return replace(entry, updated_at=now, **changes)


class LedgerStore:
    def __init__(
        self,
        db: Session,
        scope: TenantScope,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.scope = scope
        self.clock = clock

    def create(self, entry: NewEntry) -> LedgerEntry:
        if entry.type is None or entry.category is None:
            raise ValidationFailed("missing required fields: type, category, amount, description")
        entry_type = parse_enum(TransactionType, entry.type, "type")
        category = parse_enum(TransactionCategory, entry.category, "category")
        amount = parse_amount(entry.amount)
        description = _required_text(entry.description, "description")
        now = self.clock()
        row = FinancialTransaction(
            store_id=self.scope.store_id,
            type=entry_type.value,
            category=category.value,
            amount=amount,
            description=description,
            reference=(entry.reference or "").strip() or None,
            is_recurring=entry.is_recurring,
            transaction_date=to_datetime(entry.transaction_date) if entry.transaction_date else now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        self.db.flush()
        tags = normalize_tags(entry.tags)
        self._write_tags(row.id, tags)
        self.db.commit()
        logger.info("store %s created ledger entry %s", self.scope.store_id, row.id)
        return self._to_entry(row, tags)

    def get(self, entry_id: int) -> LedgerEntry:
        row = self._owned_row(entry_id)
        return self._to_entry(row, self._tags_for([row.id]).get(row.id, ()))

    def list(
        self,
        filters: Optional[LedgerFilters] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        if page < 1:
            raise ValidationFailed("page must be at least 1")
        if limit < 1:
            raise ValidationFailed("limit must be at least 1")
        filters = filters or LedgerFilters()
        query = self.db.query(FinancialTransaction).filter(
            FinancialTransaction.store_id == self.scope.store_id
        )
        if filters.type is not None:
            entry_type = parse_enum(TransactionType, filters.type, "type")
            query = query.filter(FinancialTransaction.type == entry_type.value)
        if filters.category is not None:
            category = parse_enum(TransactionCategory, filters.category, "category")
            query = query.filter(FinancialTransaction.category == category.value)
        if filters.date_from is not None:
            query = query.filter(FinancialTransaction.transaction_date >= to_datetime(filters.date_from))
        if filters.date_to is not None:
            query = query.filter(FinancialTransaction.transaction_date <= to_datetime(filters.date_to))
        if filters.search:
            query = query.filter(
                or_(
                    FinancialTransaction.description.icontains(filters.search, autoescape=True),
                    FinancialTransaction.reference.icontains(filters.search, autoescape=True),
                )
            )
        tags = normalize_tags(filters.tags)
        if tags:
            tagged = select(FinancialTransactionTag.transaction_id).where(
                FinancialTransactionTag.tag.in_(tags)
            )
            query = query.filter(FinancialTransaction.id.in_(tagged))

        total = query.count()
        rows = (
            query.order_by(
                FinancialTransaction.transaction_date.desc(),
                FinancialTransaction.id.asc(),
            )
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        tag_map = self._tags_for([row.id for row in rows])
        items = [self._to_entry(row, tag_map.get(row.id, ())) for row in rows]
        return Page(items=items, page=page, limit=limit, total=total)

    def update(self, entry_id: int, patch: EntryPatch) -> LedgerEntry:
        row = self._owned_row(entry_id)
        current = self._to_entry(row, self._tags_for([row.id]).get(row.id, ()))
        updated = apply_patch(current, patch, self.clock())
        if updated is current:
            return current
        row.type = updated.type.value
        row.category = updated.category.value
        row.amount = updated.amount
        row.description = updated.description
        row.reference = updated.reference
        row.transaction_date = updated.transaction_date
        row.is_recurring = updated.is_recurring
        row.updated_at = updated.updated_at
        if updated.tags != current.tags:
            self.db.query(FinancialTransactionTag).filter(
                FinancialTransactionTag.transaction_id == row.id
            ).delete(synchronize_session=False)
            self._write_tags(row.id, updated.tags)
        self.db.commit()
        logger.info("store %s updated ledger entry %s", self.scope.store_id, row.id)
        return updated

    def delete(self, entry_id: int) -> None:
        row = self._owned_row(entry_id)
        self.db.query(FinancialTransactionTag).filter(
            FinancialTransactionTag.transaction_id == row.id
        ).delete(synchronize_session=False)
        self.db.delete(row)
        self.db.commit()
        logger.info("store %s deleted ledger entry %s", self.scope.store_id, entry_id)

    def settle_order(self, order_id: int) -> tuple[LedgerEntry, bool]:
        """Record a paid order as sales income. Returns ``(entry, created)``.

        The store's running revenue and sales counters move in the same commit.
        """
        order = self.db.query(Order).filter(
            Order.id == order_id,
            Order.store_id == self.scope.store_id,
        ).first()
        if not order:
            raise NotFound("order not found")
        if order.payment_status != PaymentStatus.PAID.value:
            raise ValidationFailed("order is not paid")
        existing = self.db.query(FinancialTransaction).filter(
            FinancialTransaction.store_id == self.scope.store_id,
            FinancialTransaction.type == TransactionType.INCOME.value,
            FinancialTransaction.reference == order.order_number,
        ).first()
        if existing:
            return self._to_entry(existing, self._tags_for([existing.id]).get(existing.id, ())), False
        store = self.db.get(Store, self.scope.store_id)
        store.total_revenue = Decimal(store.total_revenue or 0) + Decimal(order.total)
        store.total_sales = (store.total_sales or 0) + 1
        entry = self.create(
            NewEntry(
                type=TransactionType.INCOME,
                category=TransactionCategory.SALES,
                amount=order.total,
                description=f"Sale from order #{order.order_number}",
                reference=order.order_number,
                tags=SETTLEMENT_TAGS,
                transaction_date=order.paid_at or order.created_at,
            )
        )
        return entry, True

    def _owned_row(self, entry_id: int) -> FinancialTransaction:
        row = self.db.query(FinancialTransaction).filter(
            FinancialTransaction.id == entry_id,
            FinancialTransaction.store_id == self.scope.store_id,
        ).first()
        if not row:
            raise NotFound("transaction not found")
        return row

    def _write_tags(self, transaction_id: int, tags: tuple[str, ...]) -> None:
        for tag in tags:
            self.db.add(FinancialTransactionTag(transaction_id=transaction_id, tag=tag))

    def _tags_for(self, transaction_ids: list[int]) -> dict[int, tuple[str, ...]]:
        if not transaction_ids:
            return {}
        rows = self.db.query(FinancialTransactionTag).filter(
            FinancialTransactionTag.transaction_id.in_(transaction_ids)
        ).order_by(FinancialTransactionTag.tag).all()
        tags: dict[int, list[str]] = {}
        for row in rows:
            tags.setdefault(row.transaction_id, []).append(row.tag)
        return {key: tuple(value) for key, value in tags.items()}

    @staticmethod
    def _to_entry(row: FinancialTransaction, tags: tuple[str, ...]) -> LedgerEntry:
        return LedgerEntry(
            id=row.id,
            store_id=row.store_id,
            type=TransactionType(row.type),
            category=TransactionCategory(row.category),
            amount=Decimal(row.amount),
            description=row.description,
            reference=row.reference,
            tags=tuple(tags),
            transaction_date=as_utc(row.transaction_date),
            is_recurring=row.is_recurring,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )
