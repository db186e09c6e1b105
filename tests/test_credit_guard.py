"""
Tests for CreditGuard authorize/commit and single-step charge.
"""
import pytest

from app.core.credit_guard import CreditGuard, OnChargeFailure
from app.core.credit_pools import CV_PROCESSING, INTERVIEW, TransactionType
from app.core.errors import ChargeFailed, LedgerTransactionFailure
from app.db.models.credit import CreditTransaction
from app.db.models.organization import Organization


@pytest.fixture
def guard(ledger, pricing):
    return CreditGuard(ledger, pricing)


def fund(ledger, organization_id, amount, pool=CV_PROCESSING):
    ledger.add(organization_id, pool, amount, TransactionType.PURCHASE, "test grant")


def test_authorize_then_commit_deducts_cost(db, guard, ledger, organization):
    fund(ledger, organization.id, 10)

    authorization = guard.authorize(organization.id, "ai_matching")
    assert authorization.ok is True
    assert authorization.pool == CV_PROCESSING
    assert authorization.cost == 2
    assert authorization.available == 10

    result = guard.commit(organization.id, authorization.pool, authorization.cost, "ai_matching",
                          related_id="match_1")
    assert result.charged is True
    assert result.balance == 8

    entry = db.query(CreditTransaction).order_by(CreditTransaction.id.desc()).first()
    assert entry.amount == -2
    assert entry.type == TransactionType.PROCESSING
    assert entry.action_type == "ai_matching"
    assert entry.related_id == "match_1"


def test_authorize_denied_without_credits(guard, organization):
    authorization = guard.authorize(organization.id, "interview_scheduling")

    assert authorization.ok is False
    assert authorization.pool == INTERVIEW
    assert authorization.required == 1
    assert authorization.available == 0


def test_authorize_unknown_action_raises(guard, organization):
    with pytest.raises(ValueError):
        guard.authorize(organization.id, "video_call")


def test_commit_after_balance_drained_logs_and_continues(guard, ledger, organization):
    fund(ledger, organization.id, 1)
    authorization = guard.authorize(organization.id, "resume_processing")
    # A concurrent request spends the credit between authorize and commit
    ledger.deduct(organization.id, CV_PROCESSING, 1, TransactionType.PROCESSING, "concurrent")

    result = guard.commit(organization.id, authorization.pool, authorization.cost, "resume_processing")

    assert result.charged is False
    assert result.insufficient.available == 0
    assert result.error == "insufficient credits at commit"
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 0


def test_refused_commit_keeps_pending_caller_work(db, guard, organization):
    db.add(Organization(name="Pending Org"))

    result = guard.commit(organization.id, CV_PROCESSING, 3, "resume_processing")
    db.rollback()

    assert result.charged is False
    assert db.query(Organization).filter(Organization.name == "Pending Org").count() == 1


def test_authorize_decides_with_check_sufficient(guard, ledger, organization, monkeypatch):
    fund(ledger, organization.id, 10)
    calls = []

    def refuse(organization_id, pool, amount):
        calls.append((organization_id, pool, amount))
        return False

    monkeypatch.setattr(ledger, "check_sufficient", refuse)
    authorization = guard.authorize(organization.id, "ai_matching")

    assert calls == [(organization.id, CV_PROCESSING, 2)]
    assert authorization.ok is False
    assert authorization.available == 10


def test_commit_failure_raises_under_fail_operation(ledger, pricing, organization):
    guard = CreditGuard(ledger, pricing, on_charge_failure=OnChargeFailure.FAIL_OPERATION)

    with pytest.raises(ChargeFailed) as exc_info:
        guard.commit(organization.id, CV_PROCESSING, 5, "job_posting")

    assert exc_info.value.required == 5
    assert exc_info.value.available == 0


def test_commit_ledger_failure_is_reported_not_raised(guard, ledger, organization, monkeypatch):
    fund(ledger, organization.id, 5)

    def broken_deduct(*args, **kwargs):
        raise LedgerTransactionFailure("Ledger deduct failed")

    monkeypatch.setattr(ledger, "deduct", broken_deduct)
    result = guard.commit(organization.id, CV_PROCESSING, 1, "resume_processing")

    assert result.charged is False
    assert result.error == "Ledger deduct failed"


def test_policy_accepts_config_string(ledger, pricing):
    guard = CreditGuard(ledger, pricing, on_charge_failure="fail_operation")

    assert guard.on_charge_failure is OnChargeFailure.FAIL_OPERATION


def test_zero_cost_commit_is_a_no_op(db, guard, organization):
    result = guard.commit(organization.id, CV_PROCESSING, 0, "resume_processing")

    assert result.charged is True
    assert db.query(CreditTransaction).count() == 0


def test_charge_is_single_step(guard, ledger, organization):
    fund(ledger, organization.id, 5)

    charged = guard.charge(organization.id, "job_posting", related_id="job_42")
    assert charged.charged is True
    assert charged.balance == 0

    refused = guard.charge(organization.id, "job_posting")
    assert refused.charged is False
    assert refused.insufficient.required == 5
    assert refused.insufficient.available == 0


def test_charge_with_zero_cost_leaves_ledger_untouched(db, guard, pricing, organization):
    pricing.upsert("resume_processing", 0)

    result = guard.charge(organization.id, "resume_processing")

    assert result.charged is True
    assert result.balance == 0
    assert db.query(CreditTransaction).count() == 0


def test_package_covers_exactly_its_credit_amount(guard, ledger, organization):
    fund(ledger, organization.id, 100)

    for _ in range(100):
        authorization = guard.authorize(organization.id, "resume_processing")
        assert authorization.ok is True
        result = guard.commit(organization.id, authorization.pool, authorization.cost, "resume_processing")
        assert result.charged is True

    denied = guard.authorize(organization.id, "resume_processing")
    assert denied.ok is False
    assert denied.required == 1
    assert denied.available == 0
