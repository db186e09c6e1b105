"""
Super admin endpoints: pricing, manual credit adjustments, refunds, credit
expiration and ledger reconciliation.
"""
import logging
from dataclasses import asdict
from typing import List
from fastapi import APIRouter, Depends, HTTPException, status

from app.core.auth_dependency import require_admin
from app.core.credit_guard import insufficient_credits_exception
from app.core.credit_pools import TransactionType
from app.core.dependencies import get_credit_expiration, get_ledger, get_payment_processor, get_pricing_registry
from app.db.models.user import User
from app.schemas.billing import PaymentTransactionResponse, RefundRequest
from app.schemas.credits import (
    CreditAdjustmentRequest,
    CreditAdjustmentResponse,
    ExpirationRunResponse,
    PricingResponse,
    PricingUpdateRequest,
    ReconciliationResponse,
)
from app.services.credit_expiration import CreditExpirationService
from app.services.credit_ledger import CreditLedger
from app.services.payment_processor import PaymentEventProcessor
from app.services.pricing_registry import PricingRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/pricing", response_model=List[PricingResponse])
def list_pricing(
    admin: User = Depends(require_admin),
    pricing: PricingRegistry = Depends(get_pricing_registry),
):
    return pricing.all_pricing()


@router.put("/pricing", response_model=PricingResponse)
def update_pricing(
    request: PricingUpdateRequest,
    admin: User = Depends(require_admin),
    pricing: PricingRegistry = Depends(get_pricing_registry),
):
    try:
        row = pricing.upsert(request.action_type, request.cost, request.description, request.is_active)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info(f"Pricing updated by admin_id={admin.id}: {request.action_type}={request.cost}")
    return row


@router.post("/credits/adjust", response_model=CreditAdjustmentResponse)
def adjust_credits(
    request: CreditAdjustmentRequest,
    admin: User = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Add (positive amount) or remove (negative amount) credits manually."""
    if request.amount == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Amount must not be zero")

    description = f"Manual adjustment by admin {admin.id}: {request.reason}"
    try:
        if request.amount > 0:
            result = ledger.add(
                request.organization_id, request.pool, request.amount,
                TransactionType.MANUAL_ADJUSTMENT, description, related_id=f"admin:{admin.id}",
            )
        else:
            result = ledger.deduct(
                request.organization_id, request.pool, -request.amount,
                TransactionType.MANUAL_ADJUSTMENT, description, related_id=f"admin:{admin.id}",
            )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not result.ok:
        raise insufficient_credits_exception(
            result.insufficient.required, result.insufficient.available, request.pool, "manual_adjustment"
        )

    logger.info(
        f"Manual credit adjustment: admin_id={admin.id}, org_id={request.organization_id}, "
        f"pool={request.pool}, amount={request.amount}"
    )
    return {
        "organization_id": request.organization_id,
        "pool": request.pool,
        "amount": request.amount,
        "balance": result.balance,
    }


@router.post("/payments/{payment_transaction_id}/refund", response_model=PaymentTransactionResponse)
def refund_payment(
    payment_transaction_id: int,
    request: RefundRequest,
    admin: User = Depends(require_admin),
    processor: PaymentEventProcessor = Depends(get_payment_processor),
):
    logger.info(f"Refund requested by admin_id={admin.id} for payment {payment_transaction_id}")
    return processor.refund(payment_transaction_id, reason=request.reason)


@router.post("/credits/expire", response_model=ExpirationRunResponse)
def expire_credits(
    admin: User = Depends(require_admin),
    expiration: CreditExpirationService = Depends(get_credit_expiration),
):
    """Run the credit expiration pass now instead of waiting for the scheduled job."""
    logger.info(f"Credit expiration run requested by admin_id={admin.id}")
    expired = expiration.expire_due()
    return {
        "expired": [asdict(item) for item in expired],
        "total_expired_credits": sum(item.expired_credits for item in expired),
    }


@router.get("/organizations/{organization_id}/reconcile", response_model=ReconciliationResponse)
def reconcile_organization(
    organization_id: int,
    admin: User = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    report = ledger.reconcile(organization_id)
    consistent = all(entry["matches"] for entry in report.values())
    if not consistent:
        logger.error(f"Ledger mismatch for org_id={organization_id}: {report}")
    return {"organization_id": organization_id, "pools": report, "consistent": consistent}
