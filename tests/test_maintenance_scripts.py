"""
Tests for the catalog seeding, credit expiration and ledger reconciliation scripts.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from app.core.credit_pools import CV_PROCESSING, INTERVIEW, TransactionType
from app.db.models.credit import CreditBalance
from scripts.expire_credits import expire_credits
from scripts.reconcile_ledger import organizations_with_credits, reconcile_all
from scripts.seed_billing_catalog import seed_catalog


def test_seed_catalog_is_idempotent(db):
    first = seed_catalog(db)
    second = seed_catalog(db)

    assert first == {"credit_pricing": 4, "credit_packages": 5, "subscription_plans": 4}
    assert second == {"credit_pricing": 0, "credit_packages": 0, "subscription_plans": 0}


def test_reconcile_all_reports_only_mismatched_pools(db, ledger, organization, other_organization):
    ledger.add(organization.id, CV_PROCESSING, 10, TransactionType.PURCHASE, "grant")
    ledger.add(other_organization.id, INTERVIEW, 4, TransactionType.SUBSCRIPTION, "plan")

    assert organizations_with_credits(db) == [organization.id, other_organization.id]
    assert reconcile_all(db) == []

    db.execute(
        update(CreditBalance)
        .where(CreditBalance.organization_id == other_organization.id)
        .values(balance=1)
    )
    db.commit()

    assert reconcile_all(db) == [(other_organization.id, INTERVIEW, 1, 4)]
    assert reconcile_all(db, [organization.id]) == []


def test_expire_credits_removes_only_lapsed_lots(db, ledger, organization):
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    ledger.add(organization.id, CV_PROCESSING, 30, TransactionType.SUBSCRIPTION, "plan",
               related_id="in_old", expires_at=now - timedelta(days=1))
    ledger.add(organization.id, INTERVIEW, 10, TransactionType.SUBSCRIPTION, "plan",
               related_id="in_new", expires_at=now + timedelta(days=30))

    assert expire_credits(db, now=now) == 30
    assert expire_credits(db, now=now) == 0
    assert ledger.get_balance(organization.id) == {CV_PROCESSING: 0, INTERVIEW: 10}
    assert reconcile_all(db) == []


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["database"] == "connected"
