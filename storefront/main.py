from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import uuid4

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storefront.audit import AuditSink, StoreModeration
from storefront.config import Settings, settings as default_settings
from storefront.db import make_engine, make_session_factory
from storefront.errors import ErrorKind, ServiceError, ValidationFailed
from storefront.ledger import EntryPatch, LedgerFilters, LedgerStore, NewEntry
from storefront.models import PeriodType, Store, TransactionCategory, TransactionType
from storefront.periods import as_utc, end_of_day, to_datetime, utcnow
from storefront.reconciliation import LEDGER_ORDER_OVERLAP_WARNING, ReconciliationEngine
from storefront.rollup import RollupEngine, platform_trend_point
from storefront.tenancy import (
    PlatformScope,
    TenantContextResolver,
    TenantScope,
    extract_credential,
)
from storefront.traffic import TrafficRecorder

logger = logging.getLogger(__name__)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _page_meta(page: Any) -> dict:
    meta = _meta()
    meta["page"] = page.meta()
    return meta


def get_db(request: Request) -> Session:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_clock(request: Request) -> Callable[[], datetime]:
    return request.app.state.clock


def _credential(request: Request, settings: Settings) -> Optional[str]:
    return extract_credential(
        request.headers.get("authorization"),
        request.cookies.get(settings.auth_cookie_name),
    )


def tenant_scope(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> TenantScope:
    return TenantContextResolver(db, settings).resolve_tenant(_credential(request, settings))


def platform_scope(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> PlatformScope:
    return TenantContextResolver(db, settings).resolve_platform(_credential(request, settings))


def _request_info(request: Request) -> dict:
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _store_data(store: Store) -> dict:
    return {
        "store_id": store.id,
        "name": store.name,
        "subdomain": store.subdomain,
        "is_active": store.is_active,
        "is_verified": store.is_verified,
        "suspension_reason": store.suspension_reason,
    }


def _date_bound(value: Optional[str], field: str, end: bool = False) -> Optional[datetime]:
    """Parse a range bound; a bare date covers the whole day."""
    if not value:
        return None
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return end_of_day(day) if end else to_datetime(day)
        return as_utc(_DATETIME.validate_python(value))
    except ValueError:
        raise ValidationFailed(f"invalid {field}: {value!r}") from None


_DATETIME = TypeAdapter(datetime)

router = APIRouter()


@router.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@router.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class TransactionCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'type': 'INCOME', 'category': 'SALES', 'amount': 100000, 'description': 'Weekend market sales', 'reference': 'MKT-0412', 'tags': ['market'], 'transaction_date': '2026-10-12T10:00:00+00:00'}}}
    type: TransactionType
    category: TransactionCategory
    amount: Decimal
    description: str
    reference: Optional[str] = None
    tags: list[str] = []
    transaction_date: Optional[datetime] = None
    is_recurring: bool = False


class TransactionUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'amount': 120000, 'tags': ['market', 'weekend']}}}
    type: Optional[TransactionType] = None
    category: Optional[TransactionCategory] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    tags: Optional[list[str]] = None
    transaction_date: Optional[datetime] = None
    is_recurring: Optional[bool] = None


@router.post("/api/v1/financial/transactions", status_code=201, tags=["Financial"])
def create_transaction(
    payload: TransactionCreate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    entry = LedgerStore(db, scope, clock=clock).create(
        NewEntry(
            type=payload.type,
            category=payload.category,
            amount=payload.amount,
            description=payload.description,
            reference=payload.reference,
            tags=payload.tags,
            transaction_date=payload.transaction_date,
            is_recurring=payload.is_recurring,
        )
    )
    return {"data": entry.to_dict(), "meta": _meta()}


@router.get("/api/v1/financial/transactions", tags=["Financial"])
def list_transactions(
    entry_type: Optional[TransactionType] = Query(default=None, alias="type"),
    category: Optional[TransactionCategory] = Query(default=None),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    search: Optional[str] = Query(default=None),
    tags: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    filters = LedgerFilters(
        type=entry_type,
        category=category,
        date_from=_date_bound(start_date, "startDate"),
        date_to=_date_bound(end_date, "endDate", end=True),
        search=search,
        tags=tuple(tag for tag in (tags or "").split(",") if tag.strip()),
    )
    limit = min(limit or settings.default_page_limit, settings.max_page_limit)
    result = LedgerStore(db, scope).list(filters, page=page, limit=limit)
    return {"data": [entry.to_dict() for entry in result.items], "meta": _page_meta(result)}


@router.get("/api/v1/financial/transactions/{transaction_id}", tags=["Financial"])
def get_transaction(
    transaction_id: int,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": LedgerStore(db, scope).get(transaction_id).to_dict(), "meta": _meta()}


@router.patch("/api/v1/financial/transactions/{transaction_id}", tags=["Financial"])
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    entry = LedgerStore(db, scope, clock=clock).update(
        transaction_id,
        EntryPatch(
            type=payload.type,
            category=payload.category,
            amount=payload.amount,
            description=payload.description,
            reference=payload.reference,
            tags=payload.tags,
            transaction_date=payload.transaction_date,
            is_recurring=payload.is_recurring,
        ),
    )
    return {"data": entry.to_dict(), "meta": _meta()}


@router.delete("/api/v1/financial/transactions/{transaction_id}", tags=["Financial"])
def delete_transaction(
    transaction_id: int,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
) -> dict:
    LedgerStore(db, scope).delete(transaction_id)
    return {"data": {"transaction_id": transaction_id, "deleted": True}, "meta": _meta()}


@router.post("/api/v1/financial/orders/{order_id}/settle", tags=["Financial"])
def settle_order(
    order_id: int,
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> dict:
    entry, created = LedgerStore(db, scope, clock=clock).settle_order(order_id)
    return {"data": {"created": created, "transaction": entry.to_dict()}, "meta": _meta()}


def _engine(
    scope: TenantScope = Depends(tenant_scope),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ReconciliationEngine:
    return ReconciliationEngine(
        db,
        scope,
        clock=clock,
        max_buckets=settings.max_trend_buckets,
        top_limit=settings.top_categories_limit,
    )


@router.get("/api/v1/financial/summary", tags=["Financial"])
def financial_summary(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    engine: ReconciliationEngine = Depends(_engine),
) -> dict:
    summary = engine.summary(_date_bound(start_date, "startDate"), _date_bound(end_date, "endDate", end=True))
    return {"data": summary.to_dict(), "meta": _meta()}


@router.get("/api/v1/financial/trend", tags=["Financial"])
def financial_trend(
    period: PeriodType = Query(default=PeriodType.MONTHLY),
    periods: int = Query(default=12),
    engine: ReconciliationEngine = Depends(_engine),
) -> dict:
    points = engine.trend(periods, period)
    return {
        "data": [point.to_dict() for point in points],
        "meta": _meta(warnings=[LEDGER_ORDER_OVERLAP_WARNING]),
    }


@router.get("/api/v1/financial/dashboard", tags=["Financial"])
def financial_dashboard(engine: ReconciliationEngine = Depends(_engine)) -> dict:
    return {"data": engine.dashboard(), "meta": _meta(warnings=[LEDGER_ORDER_OVERLAP_WARNING])}


@router.get("/api/v1/financial/reports", tags=["Financial"])
def financial_report(
    report_type: str = Query(default="comprehensive", alias="type"),
    period: str = Query(default="month"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    transaction_type: Optional[TransactionType] = Query(default=None, alias="transactionType"),
    months: int = Query(default=12),
    engine: ReconciliationEngine = Depends(_engine),
) -> dict:
    report = engine.report(
        report_type,
        period,
        _date_bound(start_date, "startDate"),
        _date_bound(end_date, "endDate", end=True),
        transaction_type,
        months,
    )
    warnings = [LEDGER_ORDER_OVERLAP_WARNING] if report_type in ("comprehensive", "monthly_trends") else []
    return {"data": report, "meta": _meta(warnings=warnings)}


class PageViewTrack(BaseModel):
    model_config = {"json_schema_extra": {"example": {'store_id': 1, 'visitor_id': 'visitor_k2j9x1', 'page': '/products/batik-shirt'}}}
    store_id: int
    visitor_id: Optional[str] = None
    page: Optional[str] = None


class SnapshotRecord(BaseModel):
    model_config = {"json_schema_extra": {"example": {'date': '2026-10-12', 'period': 'DAILY'}}}
    snapshot_date: Optional[date] = Field(default=None, alias="date")
    period: PeriodType = PeriodType.DAILY


def _recorder(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> TrafficRecorder:
    return TrafficRecorder(db, clock=clock, max_buckets=settings.max_trend_buckets)


@router.post("/api/v1/analytics/track", tags=["Analytics"])
def track_page_view(payload: PageViewTrack, recorder: TrafficRecorder = Depends(_recorder)) -> dict:
    recorded = recorder.record_page_view(payload.store_id, payload.visitor_id, payload.page)
    return {"data": {"recorded": recorded}, "meta": _meta()}


@router.post("/api/v1/analytics/snapshots:record", tags=["Analytics"])
def record_snapshot(
    payload: SnapshotRecord,
    scope: TenantScope = Depends(tenant_scope),
    recorder: TrafficRecorder = Depends(_recorder),
) -> dict:
    snapshot = recorder.record_snapshot(scope, payload.snapshot_date, payload.period)
    return {"data": snapshot.to_dict(), "meta": _meta()}


@router.get("/api/v1/analytics/summary", tags=["Analytics"])
def analytics_summary(
    period: PeriodType = Query(default=PeriodType.DAILY),
    scope: TenantScope = Depends(tenant_scope),
    recorder: TrafficRecorder = Depends(_recorder),
) -> dict:
    return {"data": recorder.summary(scope, period), "meta": _meta()}


@router.get("/api/v1/analytics/trend", tags=["Analytics"])
def analytics_trend(
    period: PeriodType = Query(default=PeriodType.DAILY),
    periods: int = Query(default=7),
    scope: TenantScope = Depends(tenant_scope),
    recorder: TrafficRecorder = Depends(_recorder),
) -> dict:
    snapshots = recorder.trend(scope, period, periods)
    return {"data": [snapshot.to_dict() for snapshot in snapshots], "meta": _meta()}


def _rollup(
    scope: PlatformScope = Depends(platform_scope),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> RollupEngine:
    return RollupEngine(
        db,
        scope,
        clock=clock,
        max_buckets=settings.max_trend_buckets,
        recent_payments_limit=settings.recent_payments_limit,
        recent_activity_limit=settings.recent_activity_limit,
    )


@router.get("/api/v1/admin/billing", tags=["Admin"])
def admin_billing(rollup: RollupEngine = Depends(_rollup)) -> dict:
    return {"data": rollup.billing(), "meta": _meta()}


@router.get("/api/v1/admin/revenue-trend", tags=["Admin"])
def admin_revenue_trend(
    months: int = Query(default=12),
    rollup: RollupEngine = Depends(_rollup),
) -> dict:
    return {
        "data": [platform_trend_point(point) for point in rollup.revenue_trend(months)],
        "meta": _meta(),
    }


@router.get("/api/v1/admin/stats", tags=["Admin"])
def admin_stats(rollup: RollupEngine = Depends(_rollup)) -> dict:
    return {"data": rollup.platform_stats(), "meta": _meta()}


@router.get("/api/v1/admin/activities", tags=["Admin"])
def admin_activities(
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    rollup: RollupEngine = Depends(_rollup),
) -> dict:
    return {"data": rollup.recent_activity(limit), "meta": _meta()}


class StoreSuspend(BaseModel):
    model_config = {"json_schema_extra": {"example": {'reason': 'Chargeback investigation'}}}
    reason: Optional[str] = None


def _moderation(
    scope: PlatformScope = Depends(platform_scope),
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> StoreModeration:
    return StoreModeration(db, scope, audit=AuditSink(db, clock=clock))


@router.post("/api/v1/admin/stores/{store_id}/suspend", tags=["Admin"])
def suspend_store(
    store_id: int,
    request: Request,
    payload: Optional[StoreSuspend] = None,
    moderation: StoreModeration = Depends(_moderation),
) -> dict:
    reason = payload.reason if payload else None
    store = moderation.suspend(store_id, reason, **_request_info(request))
    return {"data": _store_data(store), "meta": _meta()}


@router.post("/api/v1/admin/stores/{store_id}/activate", tags=["Admin"])
def activate_store(
    store_id: int,
    request: Request,
    moderation: StoreModeration = Depends(_moderation),
) -> dict:
    store = moderation.activate(store_id, **_request_info(request))
    return {"data": _store_data(store), "meta": _meta()}


@router.post("/api/v1/admin/stores/{store_id}/verify", tags=["Admin"])
def verify_store(
    store_id: int,
    request: Request,
    moderation: StoreModeration = Depends(_moderation),
) -> dict:
    store = moderation.verify(store_id, **_request_info(request))
    return {"data": _store_data(store), "meta": _meta()}


def _error_body(kind: ErrorKind, message: str) -> dict:
    return {"error": {"kind": kind.value, "message": message}, "meta": _meta()}


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.kind.status_code, content=_error_body(exc.kind, exc.message))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted(
        {
            ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
            or "body"
            for error in exc.errors()
        }
    )
    message = f"invalid or missing fields: {', '.join(fields)}"
    return JSONResponse(status_code=400, content=_error_body(ErrorKind.VALIDATION, message))


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=_error_body(ErrorKind.INTERNAL, "internal server error"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = None
    if app.state.session_factory is None:
        engine = make_engine(app.state.settings.database_url)
        app.state.session_factory = make_session_factory(engine)
    try:
        yield
    finally:
        if engine is not None:
            engine.dispose()
            app.state.session_factory = None


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or default_settings
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    app = FastAPI(title="Storefront Reporting", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.clock = clock
    app.include_router(router)
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
    return app


app = create_app()


def run(settings: Optional[Settings] = None) -> None:
    settings = settings or default_settings
    uvicorn.run("storefront.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
