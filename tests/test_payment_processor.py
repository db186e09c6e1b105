"""
Tests for credit-pack checkout, webhook fulfilment and refunds.
"""
import logging

import pytest
import stripe

from app.core.credit_pools import CV_PROCESSING, TransactionType
from app.core.errors import (
    ManualReconciliationRequired,
    MissingMetadata,
    NotFoundError,
    RefundNotAllowed,
    UnknownCreditPackage,
    UnverifiableWebhook,
)
from app.db.models.credit import CreditTransaction
from app.db.models.payment import CreditPackage, PaymentAttempt, PaymentTransaction
from app.services.payment_processor import DEFAULT_CREDIT_PACKAGES, PaymentEventProcessor
from app.services.webhook_payloads import EventOutcome

from stripe_fixtures import checkout_completed, event_dict, signed_request, to_event


@pytest.fixture
def processor(db, ledger, gateway):
    processor = PaymentEventProcessor(db, ledger, gateway)
    processor.initialize_default_packages()
    return processor


@pytest.fixture
def starter_package(db, processor):
    return db.query(CreditPackage).filter(CreditPackage.name == "Starter Pack").one()


def start_checkout(processor, organization, package):
    checkout = processor.create_checkout(organization.id, package.id)
    return checkout["payment_attempt_id"], checkout["session_id"]


def complete(processor, organization, package, attempt_id, session_id, **kwargs):
    event = checkout_completed(
        organization.id, package.id, attempt_id, package.credit_amount,
        session_id=session_id, **kwargs,
    )
    return processor.handle_checkout_completed(to_event(event))


def test_default_packages_are_listed_in_order(processor):
    packages = processor.list_packages()

    assert [p.name for p in packages] == [p["name"] for p in DEFAULT_CREDIT_PACKAGES]
    assert all(p.pool == CV_PROCESSING for p in packages)
    assert processor.initialize_default_packages() == 0


def test_create_checkout_records_attempt(db, processor, gateway, organization, starter_package):
    checkout = processor.create_checkout(organization.id, starter_package.id, customer_email="buyer@example.com")

    attempt = db.query(PaymentAttempt).filter(PaymentAttempt.id == checkout["payment_attempt_id"]).one()
    assert attempt.status == "initiated"
    assert attempt.stripe_session_id == checkout["session_id"]
    assert attempt.amount == starter_package.price

    sent = gateway.checkout_sessions[-1]
    assert sent["payment_attempt_id"] == attempt.id
    assert sent["credit_amount"] == starter_package.credit_amount
    assert sent["customer_email"] == "buyer@example.com"


def test_create_checkout_unknown_package(processor, organization):
    with pytest.raises(NotFoundError):
        processor.create_checkout(organization.id, 9999)


def test_create_checkout_marks_attempt_failed_when_stripe_errors(db, processor, gateway, organization,
                                                                 starter_package, monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("stripe unavailable")

    monkeypatch.setattr(gateway, "create_credit_checkout_session", broken)
    with pytest.raises(RuntimeError):
        processor.create_checkout(organization.id, starter_package.id)

    attempt = db.query(PaymentAttempt).one()
    assert attempt.status == "failed"
    assert "stripe unavailable" in attempt.failure_reason


def test_completed_checkout_grants_credits(db, processor, ledger, organization, starter_package):
    attempt_id, session_id = start_checkout(processor, organization, starter_package)

    outcome = complete(processor, organization, starter_package, attempt_id, session_id,
                       payment_intent="pi_grant", amount_total=500)

    assert outcome is EventOutcome.PROCESSED
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 50

    payment = db.query(PaymentTransaction).one()
    assert payment.stripe_checkout_session_id == session_id
    assert payment.stripe_payment_intent_id == "pi_grant"
    assert payment.credits_added == 50
    assert payment.currency == "USD"

    attempt = db.query(PaymentAttempt).filter(PaymentAttempt.id == attempt_id).one()
    assert attempt.status == "succeeded"
    assert attempt.transaction_id == payment.id

    entry = db.query(CreditTransaction).one()
    assert entry.type == TransactionType.PURCHASE
    assert entry.related_id == str(payment.id)


def test_redelivered_checkout_grants_once(db, processor, ledger, organization, starter_package):
    attempt_id, session_id = start_checkout(processor, organization, starter_package)
    event = checkout_completed(organization.id, starter_package.id, attempt_id, 50, session_id=session_id)

    outcomes = [processor.handle_checkout_completed(to_event(event)) for _ in range(5)]

    assert outcomes[0] is EventOutcome.PROCESSED
    assert outcomes[1:] == [EventOutcome.DUPLICATE] * 4
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 50
    assert db.query(PaymentTransaction).count() == 1
    assert db.query(CreditTransaction).count() == 1


def test_distinct_sessions_each_grant(processor, ledger, organization, starter_package):
    for _ in range(3):
        attempt_id, session_id = start_checkout(processor, organization, starter_package)
        assert complete(processor, organization, starter_package, attempt_id, session_id) is EventOutcome.PROCESSED

    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 150


def test_checkout_without_metadata_is_permanent_error(processor, ledger, organization):
    event = checkout_completed(None, None, None, None, metadata={})

    with pytest.raises(MissingMetadata) as exc_info:
        processor.handle_checkout_completed(to_event(event))

    assert "organizationId" in exc_info.value.missing_fields
    assert exc_info.value.event_id == event["id"]
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 0


def test_attempt_id_falls_back_to_client_reference(db, processor, organization, starter_package):
    attempt_id, session_id = start_checkout(processor, organization, starter_package)
    event = checkout_completed(
        organization.id, starter_package.id, attempt_id, 50, session_id=session_id,
        metadata={
            "organizationId": str(organization.id),
            "creditPackageId": str(starter_package.id),
            "creditAmount": "50",
        },
    )

    assert processor.handle_checkout_completed(to_event(event)) is EventOutcome.PROCESSED
    assert db.query(PaymentAttempt).filter(PaymentAttempt.id == attempt_id).one().status == "succeeded"


def test_checkout_for_unknown_package(processor, ledger, organization):
    event = checkout_completed(organization.id, 9999, 1, 50)

    with pytest.raises(UnknownCreditPackage):
        processor.handle_checkout_completed(to_event(event))

    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 0


def test_subscription_mode_checkout_is_ignored(processor, organization, starter_package):
    event = checkout_completed(organization.id, starter_package.id, 1, 50)
    event["data"]["object"]["mode"] = "subscription"

    assert processor.handle_checkout_completed(to_event(event)) is EventOutcome.IGNORED


def test_unpaid_checkout_waits_for_async_payment(processor, ledger, organization, starter_package):
    event = checkout_completed(organization.id, starter_package.id, 1, 50)
    event["data"]["object"]["payment_status"] = "unpaid"

    assert processor.handle_checkout_completed(to_event(event)) is EventOutcome.IGNORED
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 0


def test_expired_checkout_marks_attempt_failed(db, processor, organization, starter_package):
    attempt_id, session_id = start_checkout(processor, organization, starter_package)
    event = checkout_completed(organization.id, starter_package.id, attempt_id, 50,
                               session_id=session_id, event_type="checkout.session.expired")

    assert processor.handle_checkout_failed(to_event(event)) is EventOutcome.PROCESSED
    assert processor.handle_checkout_failed(to_event(event)) is EventOutcome.DUPLICATE

    attempt = db.query(PaymentAttempt).filter(PaymentAttempt.id == attempt_id).one()
    assert attempt.status == "failed"
    assert attempt.failure_reason == "Checkout session expired"


def test_refund_claws_back_granted_credits(db, processor, gateway, ledger, organization, starter_package):
    attempt_id, session_id = start_checkout(processor, organization, starter_package)
    complete(processor, organization, starter_package, attempt_id, session_id, payment_intent="pi_refund")
    payment = db.query(PaymentTransaction).one()

    refunded = processor.refund(payment.id, reason="Duplicate purchase")

    assert refunded.status == "refunded"
    assert refunded.refunded_amount == payment.amount
    assert refunded.refunded_credits == 50
    assert refunded.refund_reason == "Duplicate purchase"
    assert gateway.refunds[-1]["payment_intent"] == "pi_refund"
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 0

    refund_entry = db.query(CreditTransaction).filter(
        CreditTransaction.type == TransactionType.REFUND
    ).one()
    assert refund_entry.amount == -50


def test_second_refund_is_rejected(db, processor, gateway, organization, starter_package):
    attempt_id, session_id = start_checkout(processor, organization, starter_package)
    complete(processor, organization, starter_package, attempt_id, session_id)
    payment = db.query(PaymentTransaction).one()
    processor.refund(payment.id)

    with pytest.raises(RefundNotAllowed):
        processor.refund(payment.id)
    assert len(gateway.refunds) == 1


def test_refund_of_spent_credits_needs_manual_reconciliation(db, processor, gateway, ledger,
                                                             organization, starter_package):
    attempt_id, session_id = start_checkout(processor, organization, starter_package)
    complete(processor, organization, starter_package, attempt_id, session_id)
    ledger.deduct(organization.id, CV_PROCESSING, 30, TransactionType.PROCESSING, "spent")
    payment = db.query(PaymentTransaction).one()

    with pytest.raises(ManualReconciliationRequired) as exc_info:
        processor.refund(payment.id)

    assert exc_info.value.required == 50
    assert exc_info.value.available == 20
    assert gateway.refunds == []
    assert ledger.get_pool_balance(organization.id, CV_PROCESSING) == 20
    db.refresh(payment)
    assert payment.status == "succeeded"


def test_refund_unknown_payment(processor):
    with pytest.raises(NotFoundError):
        processor.refund(424242)


def test_payment_history_is_scoped_to_organization(processor, organization, other_organization, starter_package):
    attempt_id, session_id = start_checkout(processor, organization, starter_package)
    complete(processor, organization, starter_package, attempt_id, session_id)

    assert len(processor.payment_history(organization.id)) == 1
    assert processor.payment_history(other_organization.id) == []


def test_construct_event_verifies_signature(processor, organization, starter_package):
    event = event_dict("checkout.session.completed", {"id": "cs_test_sig"})
    payload, headers = signed_request(event)

    parsed = processor.construct_event(payload.encode(), headers["Stripe-Signature"])
    assert parsed.id == event["id"]
    assert processor.verify_signature(payload.encode(), headers["Stripe-Signature"]) is True

    assert processor.verify_signature(payload.encode(), "t=1,v1=deadbeef") is False
    with pytest.raises(UnverifiableWebhook):
        processor.construct_event(payload.encode(), None)


@pytest.mark.parametrize("payload,signature,message", [
    (b'{"id": "evt_1"}', "t=1,v1=deadbeef", "Webhook rejected: signature verification failed"),
    (b"\xff\xfe", None, "Webhook rejected: missing Stripe-Signature header"),
])
def test_rejected_webhook_log_carries_no_failure_detail(gateway, caplog, payload, signature, message):
    caplog.set_level(logging.WARNING, logger="app.services.stripe_service")

    with pytest.raises(UnverifiableWebhook):
        gateway.verify_webhook(payload, signature)

    assert [record.getMessage() for record in caplog.records] == [message]


def test_undecodable_signed_body_logs_fixed_message(gateway, caplog, monkeypatch):
    caplog.set_level(logging.WARNING, logger="app.services.stripe_service")
    monkeypatch.setattr(stripe.WebhookSignature, "verify_header", lambda *args: True)

    with pytest.raises(UnverifiableWebhook):
        gateway.verify_webhook(b"\xff\xfe not json", "t=1,v1=anything")

    assert [record.getMessage() for record in caplog.records] == [
        "Webhook rejected: payload is not valid JSON"
    ]
