"""
Credit balance endpoints.

Balances, ledger history and usage for the caller's organization, plus the
authorize/consume pair used by services that run expensive operations.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.auth_dependency import get_current_organization_id
from app.core.credit_guard import CreditGuard, insufficient_credits_exception
from app.core.credit_pools import CREDIT_POOLS
from app.core.dependencies import get_credit_expiration, get_credit_guard, get_ledger
from app.schemas.credits import (
    AuthorizeRequest,
    AuthorizeResponse,
    BalanceResponse,
    ConsumeRequest,
    ConsumeResponse,
    CreditHistoryResponse,
    ExpiringCreditsResponse,
    UsageStatsResponse,
)
from app.services.credit_expiration import CreditExpirationService
from app.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    organization_id: int = Depends(get_current_organization_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Current balance of every credit pool."""
    return {"organization_id": organization_id, "balances": ledger.get_balance(organization_id)}


@router.get("/history", response_model=CreditHistoryResponse)
def get_history(
    limit: int = Query(50, ge=1, le=500),
    pool: str = Query(None, description="Only entries for this pool"),
    organization_id: int = Depends(get_current_organization_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Ledger entries, newest first."""
    if pool is not None and pool not in CREDIT_POOLS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown credit pool: {pool}")

    return {
        "organization_id": organization_id,
        "transactions": ledger.history(organization_id, limit=limit, pool=pool),
    }


@router.get("/usage", response_model=UsageStatsResponse)
def get_usage(
    organization_id: int = Depends(get_current_organization_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    stats = ledger.usage_stats(organization_id)
    logger.debug(f"Usage stats requested: org_id={organization_id}")
    return {"organization_id": organization_id, **stats}


@router.get("/expiring", response_model=ExpiringCreditsResponse)
def get_expiring(
    days: int = Query(7, ge=1, le=365),
    organization_id: int = Depends(get_current_organization_id),
    expiration: CreditExpirationService = Depends(get_credit_expiration),
):
    """Subscription credits that expire within the next `days` days."""
    lots = expiration.get_expiring(organization_id, within_days=days)
    return {
        "organization_id": organization_id,
        "within_days": days,
        "total_expiring": sum(lot.remaining_credits for lot in lots),
        "lots": lots,
    }


@router.post("/authorize", response_model=AuthorizeResponse)
def authorize(
    request: AuthorizeRequest,
    organization_id: int = Depends(get_current_organization_id),
    guard: CreditGuard = Depends(get_credit_guard),
):
    """
    Check that the organization can afford an action. Nothing is reserved.

    Returns 402 with requiredCredits/availableCredits when it cannot.
    """
    try:
        authorization = guard.authorize(organization_id, request.action_type)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not authorization.ok:
        raise insufficient_credits_exception(
            authorization.required, authorization.available, authorization.pool, request.action_type
        )

    return {
        "authorized": True,
        "action_type": request.action_type,
        "pool": authorization.pool,
        "required_credits": authorization.required,
        "available_credits": authorization.available,
    }


@router.post("/consume", response_model=ConsumeResponse)
def consume(
    request: ConsumeRequest,
    organization_id: int = Depends(get_current_organization_id),
    guard: CreditGuard = Depends(get_credit_guard),
):
    """Charge for an action in a single atomic deduction."""
    try:
        result = guard.charge(organization_id, request.action_type, related_id=request.related_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not result.charged:
        insufficient = result.insufficient
        raise insufficient_credits_exception(
            insufficient.required, insufficient.available, insufficient.pool, request.action_type
        )

    return {
        "charged": True,
        "action_type": request.action_type,
        "pool": result.pool,
        "cost": result.cost,
        "balance": result.balance,
    }
