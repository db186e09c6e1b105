"""
Tests for the route dependencies that gate operations on credits and on an
active subscription, mounted on a small app the way a service would use them.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from app.core.credit_guard import Authorization, CreditGuard, require_credits
from app.core.credit_pools import CV_PROCESSING, TransactionType
from app.core.dependencies import get_credit_guard
from app.core.subscription_guard import require_active_subscription, require_job_post_quota
from app.db.models.subscription import OrganizationSubscription, SubscriptionPlan
from app.services.subscription_lifecycle import SubscriptionLifecycleManager

from conftest import auth_headers

service = FastAPI()


@service.post("/resumes/parse")
def parse_resume(
    authorization: Authorization = Depends(require_credits("resume_processing")),
    guard: CreditGuard = Depends(get_credit_guard),
):
    # Operation succeeded; charge for it
    result = guard.commit(
        authorization.organization_id, authorization.pool, authorization.cost,
        authorization.action_type, related_id="resume_1",
    )
    return {"charged": result.charged, "balance": result.balance}


@service.get("/premium")
def premium_feature(subscription: OrganizationSubscription = Depends(require_active_subscription)):
    return {"subscription": subscription.stripe_subscription_id}


@service.post("/jobs")
def post_job(subscription: OrganizationSubscription = Depends(require_job_post_quota)):
    return {"used": subscription.job_posts_used}


@pytest.fixture
def service_client(client):
    # Same test database and fake gateway as the main app
    service.dependency_overrides.update(client.app.dependency_overrides)
    try:
        yield TestClient(service)
    finally:
        service.dependency_overrides.clear()


@pytest.fixture
def subscription(db, ledger, member):
    SubscriptionLifecycleManager(db, ledger).initialize_default_plans()
    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.name == "Starter").one()
    record = OrganizationSubscription(
        organization_id=member.organization_id,
        plan_id=plan.id,
        stripe_subscription_id="sub_gate",
        billing_cycle="monthly",
        status="active",
        current_period_end=datetime.now(timezone.utc) + timedelta(days=20),
    )
    db.add(record)
    db.commit()
    return record


def test_require_credits_blocks_without_balance(service_client, pricing, member):
    response = service_client.post("/resumes/parse", headers=auth_headers(member))

    assert response.status_code == 402
    assert response.json()["detail"]["actionType"] == "resume_processing"
    assert response.json()["detail"]["requiredCredits"] == 1


def test_require_credits_then_commit(service_client, ledger, pricing, member):
    ledger.add(member.organization_id, CV_PROCESSING, 2, TransactionType.PURCHASE, "grant")

    response = service_client.post("/resumes/parse", headers=auth_headers(member))

    assert response.status_code == 200
    assert response.json() == {"charged": True, "balance": 1}


def test_subscription_required(service_client, member):
    response = service_client.get("/premium", headers=auth_headers(member))

    assert response.status_code == 402
    assert response.json()["detail"]["error"] == "subscription_required"


def test_active_subscription_passes(service_client, member, subscription):
    response = service_client.get("/premium", headers=auth_headers(member))

    assert response.status_code == 200
    assert response.json() == {"subscription": "sub_gate"}


def test_past_due_subscription_after_grace_period(service_client, db, member, subscription):
    subscription.status = "past_due"
    subscription.current_period_end = datetime.now(timezone.utc) - timedelta(days=10)
    db.commit()

    response = service_client.get("/premium", headers=auth_headers(member))

    assert response.status_code == 402
    assert response.json()["detail"]["error"] == "subscription_past_due"


def test_past_due_subscription_within_grace_period(service_client, db, member, subscription):
    subscription.status = "past_due"
    subscription.current_period_end = datetime.now(timezone.utc) - timedelta(days=2)
    db.commit()

    response = service_client.get("/premium", headers=auth_headers(member))

    assert response.status_code == 200


def test_job_post_quota_passes_below_limit(service_client, member, subscription):
    response = service_client.post("/jobs", headers=auth_headers(member))

    assert response.status_code == 200
    assert response.json() == {"used": 0}


def test_job_post_quota_blocks_at_limit(service_client, db, member, subscription):
    subscription.job_posts_used = 5
    db.commit()

    response = service_client.post("/jobs", headers=auth_headers(member))

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["error"] == "job_posts_limit_reached"
    assert detail["currentPlan"] == "Starter"
    assert detail["limit"] == 5
    assert detail["used"] == 5


def test_job_post_quota_requires_subscription(service_client, member):
    response = service_client.post("/jobs", headers=auth_headers(member))

    assert response.status_code == 402
