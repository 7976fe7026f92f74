from __future__ import annotations

from datetime import timedelta

from fastapi.testclient import TestClient

from recovery_engine.api import build_runtime
from recovery_engine.config import Settings
from recovery_engine.ledger_store import TargetUpsert
from recovery_engine.mailer import StubRecoveryMailer
from recovery_engine.main import create_app
from recovery_fakes import NOW, TEST_ENCRYPTION_KEY, FakePlatformClient, add_merchant, invoice

BASE = "/api/v1/recovery"


def _client(client: FakePlatformClient | None = None):
    platform = client or FakePlatformClient()
    runtime = build_runtime(
        Settings(encryption_key=TEST_ENCRYPTION_KEY),
        mailer=StubRecoveryMailer(),
        client_factory=lambda token: platform,
    )
    return TestClient(create_app(runtime)), runtime


def _add_target(runtime, merchant_id: str, natural_key: str = "in_001", **overrides) -> str:
    values = {
        "merchant_id": merchant_id,
        "natural_key": natural_key,
        "email": "jane.doe@example.com",
        "customer_name": "Jane Doe",
        "amount": 2500,
        "discovered_at": NOW - timedelta(hours=6),
    }
    values.update(overrides)
    return runtime.ledger.upsert_by_natural_key(TargetUpsert(**values)).target_id


def test_enqueue_scan_job_reuses_outstanding_job() -> None:
    client, runtime = _client()
    merchant = add_merchant(runtime.ledger)

    first = client.post(f"{BASE}/merchants/{merchant.merchant_id}/scan-jobs")
    second = client.post(f"{BASE}/merchants/{merchant.merchant_id}/scan-jobs")

    assert first.status_code == 202
    assert second.status_code == 202
    assert first.json()["created"] is True
    assert first.json()["status"] == "pending"
    assert first.json()["progress"] == 0
    assert second.json()["created"] is False
    assert second.json()["job_id"] == first.json()["job_id"]


def test_enqueue_scan_job_for_unknown_merchant_returns_404() -> None:
    client, _ = _client()

    response = client.post(f"{BASE}/merchants/mer_missing/scan-jobs")

    assert response.status_code == 404
    assert response.json()["detail"] == "merchant not found: mer_missing"


def test_scan_job_status_reflects_processing() -> None:
    client, runtime = _client(FakePlatformClient(invoices=[invoice("in_001")]))
    merchant = add_merchant(runtime.ledger)
    job_id = client.post(f"{BASE}/merchants/{merchant.merchant_id}/scan-jobs").json()["job_id"]

    runtime.sentinel.drain_job_queue()
    response = client.get(f"{BASE}/scan-jobs/{job_id}")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "completed"
    assert payload["progress"] == 100
    assert payload["completed_at"] is not None


def test_unknown_scan_job_returns_404() -> None:
    client, _ = _client()

    response = client.get(f"{BASE}/scan-jobs/scan_missing")

    assert response.status_code == 404
    assert response.json()["detail"] == "scan job not found: scan_missing"


def test_click_opens_attribution_window() -> None:
    client, runtime = _client()
    merchant = add_merchant(runtime.ledger)
    target_id = _add_target(runtime, merchant.merchant_id)

    response = client.get(f"{BASE}/l/{target_id}")

    assert response.status_code == 200
    payload = response.json()
    assert payload["target_id"] == target_id
    assert payload["click_count"] == 1
    assert payload["attribution_expires_at"] is not None


def test_click_on_unknown_target_returns_404() -> None:
    client, _ = _client()

    response = client.get(f"{BASE}/l/tgt_missing")

    assert response.status_code == 404


def test_invoice_paid_after_click_is_direct_recovery() -> None:
    client, runtime = _client()
    merchant = add_merchant(runtime.ledger)
    target_id = _add_target(runtime, merchant.merchant_id)
    client.get(f"{BASE}/l/{target_id}")

    response = client.post(f"{BASE}/events/invoice-paid", json={"invoice_id": "in_001"})

    assert response.status_code == 200
    assert response.json() == {
        "applied": True,
        "target_id": target_id,
        "status": "recovered",
        "recovery_type": "direct",
        "reason": None,
    }
    stored = runtime.ledger.get_merchant(merchant.merchant_id)
    assert stored is not None
    assert stored.total_recovered == 2500


def test_invoice_paid_for_unknown_invoice_is_not_applied() -> None:
    client, _ = _client()

    response = client.post(f"{BASE}/events/invoice-paid", json={"invoice_id": "in_missing"})

    assert response.status_code == 200
    assert response.json()["applied"] is False


def test_invoice_paid_rejects_empty_invoice_id() -> None:
    client, _ = _client()

    response = client.post(f"{BASE}/events/invoice-paid", json={"invoice_id": ""})

    assert response.status_code == 422


def test_payment_method_updated_accepts_prefixed_subscription_id() -> None:
    client, runtime = _client()
    merchant = add_merchant(runtime.ledger)
    _add_target(runtime, merchant.merchant_id, "impending_sub_001", status="impending", amount=4330)

    response = client.post(
        f"{BASE}/events/payment-method-updated",
        json={"subscription_id": "impending_sub_001"},
    )

    assert response.status_code == 200
    assert response.json()["applied"] is True
    assert response.json()["status"] == "protected"
    stored = runtime.ledger.get_merchant(merchant.merchant_id)
    assert stored is not None
    assert stored.total_protected == 4330


def test_system_health_lists_recent_runs() -> None:
    client, runtime = _client()
    runtime.sentinel.run_dispatch()
    runtime.sentinel.run_scan_fanout()

    response = client.get(f"{BASE}/system/health")

    assert response.status_code == 200
    payload = response.json()
    assert [item["job_name"] for item in payload["recent_logs"]] == ["scan_fanout", "pulse_engine"]
    assert set(payload["last_runs"]) == {"scan_fanout", "pulse_engine"}
    assert payload["last_runs"]["pulse_engine"]["status"] == "success"


def test_leakage_breakdown_groups_open_targets_by_category() -> None:
    client, runtime = _client()
    merchant = add_merchant(runtime.ledger)
    _add_target(runtime, merchant.merchant_id, "in_001", amount=3000, failure_code="insufficient_funds")
    _add_target(runtime, merchant.merchant_id, "in_002", amount=1000, status="exhausted", failure_reason="expired_card")
    _add_target(runtime, merchant.merchant_id, "sub_001", amount=9000, status="impending", failure_code="card_declined")

    response = client.get(f"{BASE}/merchants/{merchant.merchant_id}/leakage")

    assert response.status_code == 200
    payload = response.json()
    assert payload["currency"] == "gbp"
    assert payload["total_at_risk"] == 4000
    assert [item["category"] for item in payload["categories"]] == ["Wallet Friction", "Expired Access"]
    wallet, expired = payload["categories"]
    assert (wallet["value"], wallet["count"], wallet["percentage"], wallet["recoverability"]) == (3000, 1, 75, 85)
    assert (expired["value"], expired["count"], expired["percentage"]) == (1000, 1, 25)


def test_leakage_breakdown_for_unknown_merchant_returns_404() -> None:
    client, _ = _client()

    response = client.get(f"{BASE}/merchants/mer_missing/leakage")

    assert response.status_code == 404
    assert response.json()["detail"] == "merchant not found: mer_missing"
