"""
Integration tests for /admin endpoints.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from app.core.credit_pools import CV_PROCESSING, INTERVIEW, TransactionType
from app.db.models.credit import CreditBalance
from app.db.models.payment import CreditPackage, PaymentTransaction
from app.services.payment_processor import PaymentEventProcessor

from conftest import auth_headers
from stripe_fixtures import checkout_completed, to_event


@pytest.fixture
def admin_headers(admin_user):
    return auth_headers(admin_user)


@pytest.fixture
def purchased_payment(db, ledger, gateway, organization):
    processor = PaymentEventProcessor(db, ledger, gateway)
    processor.initialize_default_packages()
    package = db.query(CreditPackage).filter(CreditPackage.name == "Starter Pack").one()
    processor.handle_checkout_completed(to_event(
        checkout_completed(organization.id, package.id, 1, package.credit_amount, payment_intent="pi_admin")
    ))
    return db.query(PaymentTransaction).one()


def test_admin_routes_reject_members(client, member):
    headers = auth_headers(member)

    assert client.get("/admin/pricing", headers=headers).status_code == 403
    response = client.post(
        "/admin/credits/adjust",
        json={"organization_id": member.organization_id, "pool": CV_PROCESSING, "amount": 1000, "reason": "please"},
        headers=headers,
    )
    assert response.status_code == 403


def test_pricing_can_be_listed_and_updated(client, pricing, admin_headers):
    listed = client.get("/admin/pricing", headers=admin_headers).json()
    assert {row["action_type"] for row in listed} == {
        "resume_processing", "ai_matching", "job_posting", "interview_scheduling",
    }

    response = client.put(
        "/admin/pricing",
        json={"action_type": "ai_matching", "cost": 3, "description": "AI matching run"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()["cost"] == 3
    assert pricing.cost_of("ai_matching") == 3


def test_pricing_update_validation(client, admin_headers):
    unknown = client.put("/admin/pricing", json={"action_type": "video_call", "cost": 1}, headers=admin_headers)
    negative = client.put("/admin/pricing", json={"action_type": "ai_matching", "cost": -1}, headers=admin_headers)

    assert unknown.status_code == 400
    assert negative.status_code == 422


def test_manual_adjustment_adds_and_removes(client, ledger, organization, admin_headers):
    added = client.post(
        "/admin/credits/adjust",
        json={"organization_id": organization.id, "pool": INTERVIEW, "amount": 30, "reason": "Goodwill"},
        headers=admin_headers,
    )
    removed = client.post(
        "/admin/credits/adjust",
        json={"organization_id": organization.id, "pool": INTERVIEW, "amount": -10, "reason": "Correction"},
        headers=admin_headers,
    )

    assert added.json()["balance"] == 30
    assert removed.json()["balance"] == 20
    entries = ledger.history(organization.id)
    assert {entry.type for entry in entries} == {TransactionType.MANUAL_ADJUSTMENT}


def test_manual_removal_cannot_overdraw(client, ledger, organization, admin_headers):
    response = client.post(
        "/admin/credits/adjust",
        json={"organization_id": organization.id, "pool": CV_PROCESSING, "amount": -5, "reason": "Correction"},
        headers=admin_headers,
    )

    assert response.status_code == 402
    assert response.json()["detail"]["availableCredits"] == 0
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 0


def test_zero_or_invalid_adjustment_is_rejected(client, organization, admin_headers):
    zero = client.post(
        "/admin/credits/adjust",
        json={"organization_id": organization.id, "pool": CV_PROCESSING, "amount": 0, "reason": "noop"},
        headers=admin_headers,
    )
    bad_pool = client.post(
        "/admin/credits/adjust",
        json={"organization_id": organization.id, "pool": "video", "amount": 5, "reason": "typo"},
        headers=admin_headers,
    )

    assert zero.status_code == 400
    assert bad_pool.status_code == 400


def test_refund_endpoint(client, db, ledger, gateway, organization, purchased_payment, admin_headers):
    response = client.post(
        f"/admin/payments/{purchased_payment.id}/refund",
        json={"reason": "Customer request"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "refunded"
    assert response.json()["refunded_credits"] == 50
    assert gateway.refunds[-1]["payment_intent"] == "pi_admin"
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 0

    again = client.post(f"/admin/payments/{purchased_payment.id}/refund", json={}, headers=admin_headers)
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "refund_not_allowed"


def test_refund_of_spent_credits_is_conflict(client, ledger, gateway, organization, purchased_payment,
                                             admin_headers):
    ledger.deduct(organization.id, CV_PROCESSING, 45, TransactionType.PROCESSING, "spent")

    response = client.post(f"/admin/payments/{purchased_payment.id}/refund", json={}, headers=admin_headers)

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "manual_reconciliation_required"
    assert detail["requiredCredits"] == 50
    assert detail["availableCredits"] == 5
    assert gateway.refunds == []


def test_refund_unknown_payment_is_404(client, admin_headers):
    response = client.post("/admin/payments/999/refund", json={}, headers=admin_headers)

    assert response.status_code == 404


def test_reconcile_endpoint(client, db, ledger, organization, admin_headers):
    ledger.add(organization.id, CV_PROCESSING, 25, TransactionType.PURCHASE, "grant")

    healthy = client.get(f"/admin/organizations/{organization.id}/reconcile", headers=admin_headers).json()
    assert healthy["consistent"] is True

    db.execute(
        update(CreditBalance)
        .where(CreditBalance.organization_id == organization.id)
        .values(balance=99)
    )
    db.commit()

    broken = client.get(f"/admin/organizations/{organization.id}/reconcile", headers=admin_headers).json()
    assert broken["consistent"] is False
    assert broken["pools"][CV_PROCESSING] == {"balance": 99, "ledger_sum": 25, "matches": False}


def test_expire_credits_endpoint(client, db, ledger, organization, admin_headers, member):
    past = datetime.now(timezone.utc) - timedelta(days=1)
    ledger.add(organization.id, CV_PROCESSING, 200, TransactionType.SUBSCRIPTION, "plan",
               related_id="in_old", expires_at=past)
    ledger.deduct(organization.id, CV_PROCESSING, 50, TransactionType.PROCESSING, "resumes")

    assert client.post("/admin/credits/expire", headers=auth_headers(member)).status_code == 403
    response = client.post("/admin/credits/expire", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["total_expired_credits"] == 150
    assert body["expired"][0]["organization_id"] == organization.id
    assert body["expired"][0]["pool"] == CV_PROCESSING
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 0

    again = client.post("/admin/credits/expire", headers=admin_headers).json()
    assert again == {"expired": [], "total_expired_credits": 0}
