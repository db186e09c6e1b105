"""
Unit tests for the credit ledger.
Tests conditional deductions, grants, history, usage stats and reconciliation.
"""
import random

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from app.core.credit_pools import CV_PROCESSING, INTERVIEW, TransactionType
from app.core.errors import LedgerTransactionFailure
from app.db.models.credit import CreditBalance, CreditTransaction
from app.db.models.organization import Organization


def ledger_entries(db, organization_id):
    return db.query(CreditTransaction).filter(
        CreditTransaction.organization_id == organization_id
    ).order_by(CreditTransaction.id).all()


def test_missing_pools_read_as_zero(ledger, organization):
    assert ledger.get_balance(organization.id) == {CV_PROCESSING: 0, INTERVIEW: 0}
    assert ledger.get_pool_balance(organization.id, INTERVIEW) == 0


def test_add_creates_balance_row_and_entry(db, ledger, organization):
    result = ledger.add(organization.id, CV_PROCESSING, 100, TransactionType.PURCHASE, "Starter Pack")

    assert result.ok is True
    assert result.balance == 100
    assert ledger.get_balance(organization.id) == {CV_PROCESSING: 100, INTERVIEW: 0}

    entries = ledger_entries(db, organization.id)
    assert len(entries) == 1
    assert entries[0].amount == 100
    assert entries[0].type == TransactionType.PURCHASE
    assert entries[0].balance_after == 100
    assert entries[0].id == result.transaction_id


def test_repeated_grants_accumulate(ledger, organization):
    ledger.add(organization.id, INTERVIEW, 20, TransactionType.SUBSCRIPTION, "Starter allocation")
    result = ledger.add(organization.id, INTERVIEW, 30, TransactionType.SUBSCRIPTION, "Starter allocation")

    assert result.balance == 50
    assert ledger.get_pool_balance(organization.id, INTERVIEW) == 50


def test_deduct_records_negative_entry(db, ledger, organization):
    ledger.add(organization.id, CV_PROCESSING, 10, TransactionType.PURCHASE, "grant")

    result = ledger.deduct(
        organization.id, CV_PROCESSING, 3, TransactionType.PROCESSING, "resume parse",
        related_id="resume_7", action_type="resume_processing",
    )

    assert result.ok is True
    assert result.balance == 7
    entry = ledger_entries(db, organization.id)[-1]
    assert entry.amount == -3
    assert entry.balance_after == 7
    assert entry.related_id == "resume_7"
    assert entry.action_type == "resume_processing"


def test_deduct_to_exactly_zero(ledger, organization):
    ledger.add(organization.id, CV_PROCESSING, 5, TransactionType.PURCHASE, "grant")

    result = ledger.deduct(organization.id, CV_PROCESSING, 5, TransactionType.PROCESSING, "all of it")

    assert result.ok is True
    assert result.balance == 0


def test_insufficient_deduction_changes_nothing(db, ledger, organization):
    ledger.add(organization.id, CV_PROCESSING, 10, TransactionType.PURCHASE, "grant")
    entries_before = len(ledger_entries(db, organization.id))

    result = ledger.deduct(organization.id, CV_PROCESSING, 11, TransactionType.PROCESSING, "too much")

    assert result.ok is False
    assert result.insufficient.required == 11
    assert result.insufficient.available == 10
    assert result.insufficient.pool == CV_PROCESSING
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 10
    assert len(ledger_entries(db, organization.id)) == entries_before


def test_insufficient_deduction_keeps_pending_caller_work(db, ledger, organization):
    ledger.add(organization.id, CV_PROCESSING, 2, TransactionType.PURCHASE, "grant")
    db.add(Organization(name="Pending Org"))

    result = ledger.deduct(organization.id, CV_PROCESSING, 5, TransactionType.PROCESSING, "too much")
    db.rollback()

    assert result.ok is False
    assert db.query(Organization).filter(Organization.name == "Pending Org").count() == 1
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 2


def test_deduct_from_missing_pool_is_insufficient(ledger, organization):
    result = ledger.deduct(organization.id, INTERVIEW, 1, TransactionType.PROCESSING, "schedule")

    assert result.ok is False
    assert result.insufficient.available == 0
    assert ledger.get_balance(organization.id)[INTERVIEW] == 0


@pytest.mark.parametrize("amount", [0, -5, 1.5, True, "3"])
def test_invalid_amounts_are_rejected(ledger, organization, amount):
    with pytest.raises(ValueError):
        ledger.add(organization.id, CV_PROCESSING, amount, TransactionType.PURCHASE, "bad")
    with pytest.raises(ValueError):
        ledger.deduct(organization.id, CV_PROCESSING, amount, TransactionType.PROCESSING, "bad")


def test_unknown_pool_and_type_are_rejected(ledger, organization):
    with pytest.raises(ValueError):
        ledger.add(organization.id, "video", 5, TransactionType.PURCHASE, "bad pool")
    with pytest.raises(ValueError):
        ledger.add(organization.id, CV_PROCESSING, 5, "gift", "bad type")
    with pytest.raises(ValueError):
        ledger.check_sufficient(organization.id, "video", 1)


def test_check_sufficient_is_read_only(db, ledger, organization):
    ledger.add(organization.id, CV_PROCESSING, 4, TransactionType.PURCHASE, "grant")

    assert ledger.check_sufficient(organization.id, CV_PROCESSING, 4) is True
    assert ledger.check_sufficient(organization.id, CV_PROCESSING, 5) is False
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 4
    assert len(ledger_entries(db, organization.id)) == 1


def test_random_operations_keep_balance_non_negative_and_reconciled(ledger, organization):
    rng = random.Random(20261017)
    expected = {CV_PROCESSING: 0, INTERVIEW: 0}

    for _ in range(200):
        pool = rng.choice([CV_PROCESSING, INTERVIEW])
        amount = rng.randint(1, 25)
        if rng.random() < 0.45:
            ledger.add(organization.id, pool, amount, TransactionType.PURCHASE, "grant")
            expected[pool] += amount
        else:
            result = ledger.deduct(organization.id, pool, amount, TransactionType.PROCESSING, "use")
            if expected[pool] >= amount:
                assert result.ok is True
                expected[pool] -= amount
            else:
                assert result.ok is False

        balances = ledger.get_balance(organization.id)
        assert all(value >= 0 for value in balances.values())

    assert ledger.get_balance(organization.id) == expected
    report = ledger.reconcile(organization.id)
    assert all(entry["matches"] for entry in report.values())


def test_organizations_are_isolated(ledger, organization, other_organization):
    ledger.add(organization.id, CV_PROCESSING, 10, TransactionType.PURCHASE, "grant")

    result = ledger.deduct(other_organization.id, CV_PROCESSING, 1, TransactionType.PROCESSING, "use")

    assert result.ok is False
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 10


def test_history_is_newest_first_and_filterable(ledger, organization):
    ledger.add(organization.id, CV_PROCESSING, 10, TransactionType.PURCHASE, "first")
    ledger.add(organization.id, INTERVIEW, 5, TransactionType.SUBSCRIPTION, "second")
    ledger.deduct(organization.id, CV_PROCESSING, 2, TransactionType.PROCESSING, "third")

    history = ledger.history(organization.id)
    assert [entry.description for entry in history] == ["third", "second", "first"]

    cv_only = ledger.history(organization.id, pool=CV_PROCESSING)
    assert [entry.description for entry in cv_only] == ["third", "first"]

    assert len(ledger.history(organization.id, limit=1)) == 1


def test_usage_stats_aggregates_ledger(ledger, organization):
    ledger.add(organization.id, CV_PROCESSING, 100, TransactionType.PURCHASE, "pack")
    ledger.add(organization.id, INTERVIEW, 50, TransactionType.SUBSCRIPTION, "plan")
    for _ in range(3):
        ledger.deduct(organization.id, CV_PROCESSING, 1, TransactionType.PROCESSING, "parse",
                      action_type="resume_processing")
    ledger.deduct(organization.id, CV_PROCESSING, 2, TransactionType.PROCESSING, "match",
                  action_type="ai_matching")
    for _ in range(2):
        ledger.deduct(organization.id, INTERVIEW, 1, TransactionType.PROCESSING, "schedule",
                      action_type="interview_scheduling")
    ledger.deduct(organization.id, CV_PROCESSING, 10, TransactionType.REFUND, "refund")

    stats = ledger.usage_stats(organization.id)

    assert stats["total_added"] == 150
    assert stats["total_deducted"] == 17
    assert stats["pools"][CV_PROCESSING] == {"added": 100, "deducted": 15}
    assert stats["pools"][INTERVIEW] == {"added": 50, "deducted": 2}
    assert stats["deductions_by_type"] == {TransactionType.PROCESSING: 6, TransactionType.REFUND: 1}
    assert stats["deductions_by_action"] == {
        "resume_processing": 3,
        "ai_matching": 1,
        "interview_scheduling": 2,
    }


def test_reconcile_flags_out_of_band_balance_change(db, ledger, organization):
    ledger.add(organization.id, CV_PROCESSING, 10, TransactionType.PURCHASE, "grant")
    db.execute(
        update(CreditBalance)
        .where(CreditBalance.organization_id == organization.id)
        .values(balance=25)
    )
    db.commit()

    report = ledger.reconcile(organization.id)

    assert report[CV_PROCESSING] == {"balance": 25, "ledger_sum": 10, "matches": False}
    assert report[INTERVIEW]["matches"] is True


def test_database_failure_rolls_back_and_raises(db, ledger, organization, monkeypatch):
    ledger.add(organization.id, CV_PROCESSING, 10, TransactionType.PURCHASE, "grant")

    def failing_flush(*args, **kwargs):
        raise OperationalError("INSERT INTO credit_transactions", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "flush", failing_flush)
    with pytest.raises(LedgerTransactionFailure) as exc_info:
        ledger.deduct(organization.id, CV_PROCESSING, 4, TransactionType.PROCESSING, "parse",
                      action_type="resume_processing")
    monkeypatch.undo()

    assert exc_info.value.context["organization_id"] == organization.id
    assert exc_info.value.context["amount"] == 4
    assert exc_info.value.context["action_type"] == "resume_processing"
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 10
    assert len(ledger_entries(db, organization.id)) == 1
