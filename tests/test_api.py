from conftest import NOW, auth_headers, token_for
from storefront import main
from storefront.config import Settings
from storefront.models import (
    AdminActivityLog,
    FinancialTransaction,
    FinancialTransactionTag,
    PaymentStatus,
    Role,
    User,
)
from storefront.reconciliation import LEDGER_ORDER_OVERLAP_WARNING


def _owner_headers(seed):
    owner = seed.user()
    store = seed.store(owner=owner)
    return store, auth_headers(owner)


def test_root_and_health(client) -> None:
    assert client.get("/").json() == {"status": "ok"}
    assert client.get("/health").json() == {"status": "healthy"}


def test_transaction_crud_flow(client, seed) -> None:
    _, headers = _owner_headers(seed)

    create_resp = client.post(
        "/api/v1/financial/transactions",
        json={
            "type": "INCOME",
            "category": "SALES",
            "amount": 100000,
            "description": "Weekend market sales",
            "tags": ["market"],
        },
        headers=headers,
    )
    assert create_resp.status_code == 201
    created = create_resp.json()["data"]
    transaction_id = created["transaction_id"]
    assert created["amount"] == 100000.0
    assert created["tags"] == ["market"]

    list_resp = client.get("/api/v1/financial/transactions", params={"tags": "market,other"}, headers=headers)
    assert list_resp.status_code == 200
    body = list_resp.json()
    assert [item["transaction_id"] for item in body["data"]] == [transaction_id]
    assert body["meta"]["page"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}

    patch_resp = client.patch(
        f"/api/v1/financial/transactions/{transaction_id}",
        json={"amount": 120000},
        headers=headers,
    )
    assert patch_resp.status_code == 200
    assert patch_resp.json()["data"]["amount"] == 120000.0

    delete_resp = client.delete(f"/api/v1/financial/transactions/{transaction_id}", headers=headers)
    assert delete_resp.status_code == 200
    assert delete_resp.json()["data"]["deleted"] is True

    missing = client.get(f"/api/v1/financial/transactions/{transaction_id}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["kind"] == "NOT_FOUND"


def test_invalid_payloads_are_400(client, seed) -> None:
    _, headers = _owner_headers(seed)
    base = {"type": "EXPENSE", "category": "RENT", "description": "Kiosk rent"}

    zero = client.post("/api/v1/financial/transactions", json={**base, "amount": 0}, headers=headers)
    assert zero.status_code == 400
    assert zero.json()["error"]["kind"] == "VALIDATION"

    bad_enum = client.post(
        "/api/v1/financial/transactions", json={**base, "amount": 10, "category": "LOTTERY"}, headers=headers
    )
    assert bad_enum.status_code == 400

    missing = client.post("/api/v1/financial/transactions", json={"amount": 10}, headers=headers)
    assert missing.status_code == 400
    assert "description" in missing.json()["error"]["message"]

    assert client.get("/api/v1/financial/transactions", headers=headers).json()["meta"]["page"]["total"] == 0


def test_foreign_transaction_is_404_not_403(client, seed) -> None:
    _, owner_headers = _owner_headers(seed)
    _, intruder_headers = _owner_headers(seed)
    created = client.post(
        "/api/v1/financial/transactions",
        json={"type": "INCOME", "category": "SALES", "amount": 50, "description": "Sale"},
        headers=owner_headers,
    ).json()["data"]

    path = f"/api/v1/financial/transactions/{created['transaction_id']}"
    assert client.patch(path, json={"amount": 1}, headers=intruder_headers).status_code == 404
    assert client.delete(path, headers=intruder_headers).status_code == 404
    assert client.get(path, headers=owner_headers).json()["data"]["amount"] == 50.0


def test_credentials_are_required(client, seed) -> None:
    assert client.get("/api/v1/financial/summary").status_code == 401
    bad = client.get("/api/v1/financial/summary", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401
    assert bad.json()["error"] == {"kind": "UNAUTHENTICATED", "message": "invalid credential"}

    owner = seed.user()
    seed.store(owner=owner)
    client.cookies.set("auth-token", token_for(owner))
    assert client.get("/api/v1/financial/summary").status_code == 200


def test_summary_and_trend(client, seed) -> None:
    _, headers = _owner_headers(seed)
    _, other_headers = _owner_headers(seed)
    for entry_type, category, amount in (("INCOME", "SALES", 100000), ("EXPENSE", "MARKETING", 30000)):
        client.post(
            "/api/v1/financial/transactions",
            json={"type": entry_type, "category": category, "amount": amount, "description": "entry"},
            headers=headers,
        )

    summary = client.get("/api/v1/financial/summary", headers=headers).json()["data"]
    assert summary["total_income"] == 100000.0
    assert summary["total_expenses"] == 30000.0
    assert summary["net_profit"] == 70000.0

    other = client.get("/api/v1/financial/summary", headers=other_headers).json()["data"]
    assert (other["total_income"], other["total_expenses"], other["net_profit"]) == (0.0, 0.0, 0.0)

    trend = client.get("/api/v1/financial/trend", params={"periods": 12}, headers=other_headers).json()
    assert len(trend["data"]) == 12
    assert trend["data"][-1]["label"] == "Mar 2026"
    assert trend["meta"]["warnings"] == [LEDGER_ORDER_OVERLAP_WARNING]

    too_many = client.get("/api/v1/financial/trend", params={"periods": 500}, headers=headers)
    assert too_many.status_code == 400

    inverted = client.get(
        "/api/v1/financial/summary",
        params={"startDate": "2026-03-10T00:00:00Z", "endDate": "2026-03-01T00:00:00Z"},
        headers=headers,
    )
    assert inverted.status_code == 400


def test_dashboard_and_reports(client, seed) -> None:
    _, headers = _owner_headers(seed)
    dashboard = client.get("/api/v1/financial/dashboard", headers=headers).json()
    assert dashboard["data"]["growth"] == {"income": 0.0, "expenses": 0.0, "profit": 0.0}
    assert dashboard["meta"]["warnings"] == [LEDGER_ORDER_OVERLAP_WARNING]

    report = client.get("/api/v1/financial/reports", params={"type": "summary", "period": "year"}, headers=headers)
    assert report.status_code == 200
    assert report.json()["data"]["report_type"] == "summary"
    assert report.json()["meta"]["warnings"] == []

    bad = client.get("/api/v1/financial/reports", params={"type": "nope"}, headers=headers)
    assert bad.status_code == 400


def test_settle_order(client, seed) -> None:
    store, headers = _owner_headers(seed)
    order = seed.order(store, 250000)
    pending = seed.order(store, 10, payment_status=PaymentStatus.PENDING)

    first = client.post(f"/api/v1/financial/orders/{order.id}/settle", headers=headers)
    assert first.status_code == 200
    assert first.json()["data"]["created"] is True
    assert first.json()["data"]["transaction"]["reference"] == order.order_number

    second = client.post(f"/api/v1/financial/orders/{order.id}/settle", headers=headers)
    assert second.json()["data"]["created"] is False

    assert client.post(f"/api/v1/financial/orders/{pending.id}/settle", headers=headers).status_code == 400
    assert client.post("/api/v1/financial/orders/9999/settle", headers=headers).status_code == 404


def test_track_and_snapshot_flow(client, seed) -> None:
    store, headers = _owner_headers(seed)
    for visitor in ("v1", "v1", "v2"):
        resp = client.post("/api/v1/analytics/track", json={"store_id": store.id, "visitor_id": visitor})
        assert resp.status_code == 200
        assert resp.json()["data"]["recorded"] is True
    assert client.post("/api/v1/analytics/track", json={"store_id": 9999}).status_code == 404

    first = client.post("/api/v1/analytics/snapshots:record", json={"period": "DAILY"}, headers=headers)
    second = client.post("/api/v1/analytics/snapshots:record", json={"date": NOW.date().isoformat()}, headers=headers)
    assert first.status_code == 200
    assert first.json()["data"] == second.json()["data"]
    assert first.json()["data"]["total_views"] == 3
    assert first.json()["data"]["unique_visitors"] == 2

    trend = client.get("/api/v1/analytics/trend", params={"period": "DAILY", "periods": 7}, headers=headers)
    assert [point["total_views"] for point in trend.json()["data"]] == [0, 0, 0, 0, 0, 0, 3]

    summary = client.get("/api/v1/analytics/summary", headers=headers).json()["data"]
    assert summary["current"]["total_views"] == 3
    assert summary["growth"]["views"] == 100.0


def test_admin_endpoints_require_admin_role(client, seed) -> None:
    _, owner_headers = _owner_headers(seed)
    for path in ("/api/v1/admin/billing", "/api/v1/admin/stats", "/api/v1/admin/revenue-trend"):
        resp = client.get(path, headers=owner_headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["kind"] == "FORBIDDEN"
    assert client.get("/api/v1/admin/billing").status_code == 401


def test_admin_billing_rollup(client, seed) -> None:
    for plan, price in (("BASIC", 99000), ("PRO", 299000), ("ENTERPRISE", 999000)):
        seed.subscription(seed.store(), plan, price)
    admin_headers = auth_headers(seed.user(Role.ADMIN))

    billing = client.get("/api/v1/admin/billing", headers=admin_headers).json()["data"]
    assert billing["revenue"]["total"] == 1397000.0
    assert round(sum(plan["percentage"] for plan in billing["plans"]), 6) == 100.0
    assert len(billing["monthly_revenue"]) == 12
    assert billing["monthly_revenue"][-1]["total_revenue"] == 1397000.0

    trend = client.get("/api/v1/admin/revenue-trend", params={"months": 6}, headers=admin_headers).json()["data"]
    assert len(trend) == 6


def test_admin_moderation_and_activity(client, seed) -> None:
    store = seed.store()
    admin_headers = auth_headers(seed.user(Role.SUPER_ADMIN))

    suspended = client.post(
        f"/api/v1/admin/stores/{store.id}/suspend", json={"reason": "Chargebacks"}, headers=admin_headers
    )
    assert suspended.status_code == 200
    assert suspended.json()["data"]["is_active"] is False
    assert suspended.json()["data"]["suspension_reason"] == "Chargebacks"

    again = client.post(f"/api/v1/admin/stores/{store.id}/suspend", headers=admin_headers)
    assert again.status_code == 409
    assert client.post("/api/v1/admin/stores/9999/verify", headers=admin_headers).status_code == 404

    owner_headers = auth_headers(seed.db.get(User, store.owner_id))
    assert client.get("/api/v1/financial/summary", headers=owner_headers).status_code == 401

    assert client.post(f"/api/v1/admin/stores/{store.id}/activate", headers=admin_headers).status_code == 200
    assert client.get("/api/v1/financial/summary", headers=owner_headers).status_code == 200

    activities = client.get("/api/v1/admin/activities", params={"limit": 5}, headers=admin_headers).json()["data"]
    assert [activity["action"] for activity in activities] == ["STORE_ACTIVATED", "STORE_SUSPENDED"]

    stats = client.get("/api/v1/admin/stats", headers=admin_headers).json()["data"]
    assert stats["stores"]["active"] == 1


def test_date_only_end_bound_covers_whole_day(client, seed) -> None:
    _, headers = _owner_headers(seed)
    for moment, amount in (("2026-03-10T15:00:00Z", 4000), ("2026-03-11T09:00:00Z", 700)):
        client.post(
            "/api/v1/financial/transactions",
            json={
                "type": "INCOME",
                "category": "SALES",
                "amount": amount,
                "description": "entry",
                "transaction_date": moment,
            },
            headers=headers,
        )
    params = {"startDate": "2026-03-01", "endDate": "2026-03-10"}

    summary = client.get("/api/v1/financial/summary", params=params, headers=headers).json()["data"]
    assert summary["total_income"] == 4000.0

    listed = client.get("/api/v1/financial/transactions", params=params, headers=headers).json()["data"]
    assert [entry["amount"] for entry in listed] == [4000.0]

    bad = client.get("/api/v1/financial/summary", params={"endDate": "2026-13-40"}, headers=headers)
    assert bad.status_code == 400
    assert bad.json()["error"]["kind"] == "VALIDATION"


def test_moderation_survives_audit_log_failure(client, seed, engine, caplog) -> None:
    store = seed.store()
    admin_headers = auth_headers(seed.user(Role.ADMIN))
    AdminActivityLog.__table__.drop(engine)

    resp = client.post(f"/api/v1/admin/stores/{store.id}/suspend", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["is_active"] is False
    assert any("failed to record admin activity" in record.getMessage() for record in caplog.records)


def test_storage_failure_is_opaque_500(client, seed, engine) -> None:
    _, headers = _owner_headers(seed)
    FinancialTransactionTag.__table__.drop(engine)
    FinancialTransaction.__table__.drop(engine)

    resp = client.get("/api/v1/financial/summary", headers=headers)
    assert resp.status_code == 500
    assert resp.json()["error"] == {"kind": "INTERNAL", "message": "internal server error"}
    assert "SELECT" not in resp.text
    assert "financial_transaction" not in resp.text


def test_run_serves_app_with_configured_address(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))
    main.run(Settings(host="127.0.0.1", port=9001))
    assert calls == [("storefront.main:app", {"host": "127.0.0.1", "port": 9001})]
