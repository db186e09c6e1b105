"""
One-time credit purchases: checkout, webhook fulfilment and refunds.

Handles checkout.session.completed and checkout.session.expired events.
Every grant is keyed by the Stripe checkout session id, so redelivering the
same event any number of times grants credits exactly once.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.credit_pools import CV_PROCESSING, TransactionType
from app.core.errors import (
    LedgerTransactionFailure,
    ManualReconciliationRequired,
    NotFoundError,
    RefundNotAllowed,
    UnknownCreditPackage,
    UnverifiableWebhook,
)
from app.core.logging_config import sanitize_log_data
from app.db.models.payment import CreditPackage, PaymentAttempt, PaymentTransaction
from app.services.credit_ledger import CreditLedger
from app.services.stripe_service import StripeGateway
from app.services.webhook_payloads import (
    META_PAYMENT_ATTEMPT_ID,
    CheckoutSessionObject,
    EventOutcome,
    StripeEvent,
    extract_checkout_purchase,
)

logger = logging.getLogger(__name__)

DEFAULT_CREDIT_PACKAGES: List[Dict] = [
    {"name": "Starter Pack", "description": "Perfect for getting started", "credit_amount": 50, "price": 500, "sort_order": 1},
    {"name": "Professional Pack", "description": "Great for regular users", "credit_amount": 100, "price": 1000, "sort_order": 2},
    {"name": "Business Pack", "description": "Ideal for growing businesses", "credit_amount": 250, "price": 2500, "sort_order": 3},
    {"name": "Enterprise Pack", "description": "Best value for large organizations", "credit_amount": 500, "price": 5000, "sort_order": 4},
    {"name": "Corporate Pack", "description": "Maximum value for enterprises", "credit_amount": 1000, "price": 10000, "sort_order": 5},
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentEventProcessor:
    """Verifies, deduplicates and applies credit-purchase events."""

    def __init__(self, db: Session, ledger: CreditLedger, gateway: StripeGateway):
        self.db = db
        self.ledger = ledger
        self.gateway = gateway

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        try:
            self.gateway.verify_webhook(payload, signature)
        except UnverifiableWebhook:
            return False
        return True

    def construct_event(self, payload: bytes, signature: Optional[str]) -> StripeEvent:
        """
        Verify the signature and parse the event envelope.

        Raises:
            UnverifiableWebhook: Signature or payload could not be verified
        """
        raw_event = self.gateway.verify_webhook(payload, signature)
        try:
            return StripeEvent.model_validate(raw_event)
        except ValidationError as e:
            logger.warning("Verified webhook payload is not a valid event envelope")
            raise UnverifiableWebhook() from e

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def list_packages(self) -> List[CreditPackage]:
        return self.db.query(CreditPackage).filter(
            CreditPackage.is_active.is_(True)
        ).order_by(CreditPackage.sort_order, CreditPackage.price).all()

    def initialize_default_packages(self) -> int:
        """Insert default credit packages that do not exist yet. Returns rows created."""
        created = 0
        for package_data in DEFAULT_CREDIT_PACKAGES:
            existing = self.db.query(CreditPackage).filter(
                CreditPackage.name == package_data["name"]
            ).first()
            if existing:
                continue
            self.db.add(CreditPackage(pool=CV_PROCESSING, currency="USD", **package_data))
            created += 1

        self.db.commit()
        logger.info(f"Default credit packages initialized: created={created}")
        return created

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_checkout(
        self,
        organization_id: int,
        credit_package_id: int,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> Dict:
        """
        Record a payment attempt and start a Stripe checkout for a credit package.

        Returns:
            Dictionary with session_id, url and payment_attempt_id

        Raises:
            NotFoundError: Package does not exist or is inactive
            StripeGatewayError: Stripe rejected the session (attempt marked failed)
        """
        package = self.db.query(CreditPackage).filter(
            CreditPackage.id == credit_package_id,
            CreditPackage.is_active.is_(True),
        ).first()
        if not package:
            raise NotFoundError(f"Credit package {credit_package_id} not found")

        attempt = PaymentAttempt(
            organization_id=organization_id,
            credit_package_id=package.id,
            amount=package.price,
            currency=package.currency,
            status="initiated",
        )
        self.db.add(attempt)
        self.db.commit()
        self.db.refresh(attempt)

        try:
            session = self.gateway.create_credit_checkout_session(
                organization_id=organization_id,
                credit_package_id=package.id,
                payment_attempt_id=attempt.id,
                package_name=package.name,
                credit_amount=package.credit_amount,
                price=package.price,
                currency=package.currency,
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
            )
        except Exception as e:
            attempt.status = "failed"
            attempt.failure_reason = f"Checkout session creation failed: {e}"
            attempt.completed_at = _utcnow()
            self.db.commit()
            raise

        attempt.stripe_session_id = session.id
        self.db.commit()

        logger.info(
            f"Credit checkout started: org_id={organization_id}, package_id={package.id}, "
            f"attempt_id={attempt.id}, session_id={session.id}"
        )
        return {"session_id": session.id, "url": session.url, "payment_attempt_id": attempt.id}

    # ------------------------------------------------------------------
    # Webhook handlers
    # ------------------------------------------------------------------

    def handle_checkout_completed(self, event: StripeEvent) -> EventOutcome:
        """
        Grant the credits of a completed credit-pack checkout.

        Raises:
            MissingMetadata: Required metadata absent (permanent)
            UnknownCreditPackage: Package no longer exists (permanent)
            LedgerTransactionFailure: Database failure, safe to redeliver
        """
        session = CheckoutSessionObject.model_validate(event.data.object)

        if session.mode == "subscription":
            logger.info(f"Ignoring subscription-mode checkout session {session.id} (event_id={event.id})")
            return EventOutcome.IGNORED
        if session.payment_status not in (None, "paid", "no_payment_required"):
            logger.info(
                f"Checkout session {session.id} completed with payment_status={session.payment_status}, "
                f"waiting for payment (event_id={event.id})"
            )
            return EventOutcome.IGNORED

        purchase = extract_checkout_purchase(event)

        existing = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.stripe_checkout_session_id == purchase.session_id
        ).first()
        if existing:
            logger.info(
                f"Duplicate checkout.session.completed for session {purchase.session_id} "
                f"(event_id={event.id}, payment_transaction_id={existing.id})"
            )
            return EventOutcome.DUPLICATE

        package = self.db.query(CreditPackage).filter(
            CreditPackage.id == purchase.credit_package_id
        ).first()
        if not package:
            raise UnknownCreditPackage(
                f"Credit package {purchase.credit_package_id} not found",
                event_id=event.id,
                event_type=event.type,
            )

        if purchase.credit_amount != package.credit_amount:
            logger.warning(
                f"Checkout metadata creditAmount={purchase.credit_amount} differs from package "
                f"{package.id} credit_amount={package.credit_amount}; granting the package amount"
            )

        now = _utcnow()
        try:
            payment = PaymentTransaction(
                organization_id=purchase.organization_id,
                stripe_checkout_session_id=purchase.session_id,
                stripe_payment_intent_id=purchase.payment_intent_id,
                credit_package_id=package.id,
                amount=purchase.amount_total if purchase.amount_total is not None else package.price,
                currency=(purchase.currency or package.currency).upper(),
                status="succeeded",
                pool=package.pool,
                credits_purchased=purchase.credit_amount,
                credits_added=package.credit_amount,
                completed_at=now,
            )
            self.db.add(payment)
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                f"Concurrent duplicate checkout.session.completed for session {purchase.session_id} "
                f"(event_id={event.id})"
            )
            return EventOutcome.DUPLICATE

        result = self.ledger.add(
            purchase.organization_id,
            package.pool,
            package.credit_amount,
            TransactionType.PURCHASE,
            f"Purchased {package.credit_amount} credits - {package.name}",
            related_id=str(payment.id),
            commit=False,
        )

        attempt = self.db.query(PaymentAttempt).filter(
            PaymentAttempt.id == purchase.payment_attempt_id
        ).first()
        if attempt:
            attempt.status = "succeeded"
            attempt.transaction_id = payment.id
            attempt.stripe_session_id = attempt.stripe_session_id or purchase.session_id
            attempt.completed_at = now
        else:
            logger.warning(
                f"Payment attempt {purchase.payment_attempt_id} not found for session {purchase.session_id}"
            )

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Concurrent duplicate detected at commit for session {purchase.session_id}")
            return EventOutcome.DUPLICATE

        logger.info(
            f"Credit purchase fulfilled: org_id={purchase.organization_id}, package_id={package.id}, "
            f"credits={package.credit_amount}, pool={package.pool}, balance={result.balance}, "
            f"session_id={purchase.session_id}"
        )
        return EventOutcome.PROCESSED

    def handle_checkout_failed(self, event: StripeEvent) -> EventOutcome:
        """Mark the payment attempt of an expired or failed checkout as failed."""
        session = CheckoutSessionObject.model_validate(event.data.object)
        attempt_ref = session.metadata.get(META_PAYMENT_ATTEMPT_ID) or session.client_reference_id

        if not attempt_ref or not str(attempt_ref).isdigit():
            logger.warning(
                f"No payment attempt ID in failed checkout session {session.id}: "
                f"{sanitize_log_data(session.metadata)}"
            )
            return EventOutcome.IGNORED

        attempt = self.db.query(PaymentAttempt).filter(PaymentAttempt.id == int(attempt_ref)).first()
        if not attempt:
            logger.warning(f"Payment attempt {attempt_ref} not found for failed session {session.id}")
            return EventOutcome.IGNORED
        if attempt.status != "initiated":
            return EventOutcome.DUPLICATE

        attempt.status = "failed"
        attempt.failure_reason = f"Checkout session {event.type.split('.')[-1]}"
        attempt.completed_at = _utcnow()
        self.db.commit()

        logger.info(f"Payment attempt {attempt.id} marked failed (session_id={session.id})")
        return EventOutcome.PROCESSED

    # ------------------------------------------------------------------
    # Refunds and history
    # ------------------------------------------------------------------

    def refund(self, payment_transaction_id: int, reason: Optional[str] = None) -> PaymentTransaction:
        """
        Refund a credit purchase and claw back exactly the credits it granted.

        Raises:
            NotFoundError: Unknown payment transaction
            RefundNotAllowed: Not succeeded, already refunded, or no payment intent
            ManualReconciliationRequired: Granted credits are no longer available
            StripeGatewayError: Stripe refused the refund (nothing recorded)
        """
        payment = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.id == payment_transaction_id
        ).first()
        if not payment:
            raise NotFoundError(f"Payment transaction {payment_transaction_id} not found")
        if payment.status != "succeeded" or payment.refunded_amount:
            raise RefundNotAllowed(f"Payment transaction {payment.id} cannot be refunded (status={payment.status})")
        if not payment.stripe_payment_intent_id:
            raise RefundNotAllowed(f"Payment transaction {payment.id} has no payment intent")

        available = self.ledger.get_pool_balance(payment.organization_id, payment.pool)
        if available < payment.credits_added:
            logger.error(
                f"Refund blocked, credits already spent: payment_transaction_id={payment.id}, "
                f"org_id={payment.organization_id}, pool={payment.pool}, "
                f"required={payment.credits_added}, available={available}"
            )
            raise ManualReconciliationRequired(
                f"Organization no longer holds the {payment.credits_added} credits granted by this payment",
                payment_transaction_id=str(payment.id),
                required=payment.credits_added,
                available=available,
            )

        refund = self.gateway.create_refund(payment.stripe_payment_intent_id, payment.amount, reason)
        refund_reason = reason or "Customer requested refund"

        clawed_back = False
        try:
            result = self.ledger.deduct(
                payment.organization_id,
                payment.pool,
                payment.credits_added,
                TransactionType.REFUND,
                f"Refunded {payment.credits_added} credits - {refund_reason}",
                related_id=str(payment.id),
                commit=False,
            )
            clawed_back = result.ok
        except LedgerTransactionFailure:
            # Session was rolled back; the refund still has to be recorded
            payment = self.db.query(PaymentTransaction).filter(
                PaymentTransaction.id == payment_transaction_id
            ).first()

        payment.status = "refunded"
        payment.refunded_amount = refund.amount
        payment.refunded_credits = payment.credits_added if clawed_back else 0
        payment.refund_reason = refund_reason
        payment.stripe_refund_id = refund.id
        payment.refunded_at = _utcnow()
        self.db.commit()
        self.db.refresh(payment)

        if not clawed_back:
            available = self.ledger.get_pool_balance(payment.organization_id, payment.pool)
            logger.error(
                f"Refund {refund.id} issued but credits could not be clawed back: "
                f"payment_transaction_id={payment.id}, org_id={payment.organization_id}, "
                f"pool={payment.pool}, required={payment.credits_added}, available={available}"
            )
            raise ManualReconciliationRequired(
                f"Refund {refund.id} issued but {payment.credits_added} credits could not be removed",
                payment_transaction_id=str(payment.id),
                required=payment.credits_added,
                available=available,
            )

        logger.info(
            f"Refunded payment {payment.id}: {refund.amount} minor units, "
            f"{payment.credits_added} {payment.pool} credits"
        )
        return payment

    def payment_history(self, organization_id: int, limit: int = 50) -> List[PaymentTransaction]:
        return self.db.query(PaymentTransaction).filter(
            PaymentTransaction.organization_id == organization_id
        ).order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()).limit(limit).all()
