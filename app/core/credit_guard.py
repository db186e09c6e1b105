"""
Credit enforcement for expensive operations.

Two-phase usage:
1. authorize() before the operation: checks the pool covers the action's cost
2. commit() after the operation succeeded: deducts the cost

The check is not a reservation, so two concurrent requests can both pass
authorize() and only one of them be charged. The ledger itself never
overdraws; the risk is an under-charge, governed by OnChargeFailure.
charge() is the single-step alternative with no window at all.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, status

from app.core.credit_pools import TransactionType, get_pool_for_action
from app.core.errors import ChargeFailed, LedgerTransactionFailure
from app.services.credit_ledger import CreditLedger, InsufficientCredits
from app.services.pricing_registry import PricingRegistry

logger = logging.getLogger(__name__)


class OnChargeFailure(str, Enum):
    """What commit() does when the deduction fails after the operation ran."""
    LOG_AND_CONTINUE = "log_and_continue"
    FAIL_OPERATION = "fail_operation"


@dataclass(frozen=True)
class Authorization:
    ok: bool
    organization_id: int
    action_type: str
    pool: str
    cost: int
    available: int

    @property
    def required(self) -> int:
        return self.cost


@dataclass(frozen=True)
class ChargeResult:
    charged: bool
    organization_id: int
    action_type: str
    pool: str
    cost: int
    balance: Optional[int] = None
    insufficient: Optional[InsufficientCredits] = None
    error: Optional[str] = None


class CreditGuard:
    """Gates operations behind a credit check and charges them afterwards."""

    def __init__(
        self,
        ledger: CreditLedger,
        pricing: PricingRegistry,
        on_charge_failure: OnChargeFailure = OnChargeFailure.LOG_AND_CONTINUE,
    ):
        self.ledger = ledger
        self.pricing = pricing
        self.on_charge_failure = OnChargeFailure(on_charge_failure)

    def authorize(self, organization_id: int, action_type: str) -> Authorization:
        """
        Check whether the organization can afford an action right now.

        Raises:
            ValueError: Unknown action type
        """
        pool = get_pool_for_action(action_type)
        cost = self.pricing.cost_of(action_type)
        ok = self.ledger.check_sufficient(organization_id, pool, cost)
        # Reported to the client either way; not used for the decision
        available = self.ledger.get_pool_balance(organization_id, pool)

        if not ok:
            logger.info(
                f"Credit authorization denied: org_id={organization_id}, action={action_type}, "
                f"pool={pool}, required={cost}, available={available}"
            )

        return Authorization(
            ok=ok,
            organization_id=organization_id,
            action_type=action_type,
            pool=pool,
            cost=cost,
            available=available,
        )

    def commit(
        self,
        organization_id: int,
        pool: str,
        cost: int,
        action_type: str,
        related_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ChargeResult:
        """
        Charge for an operation that has already completed.

        Under LOG_AND_CONTINUE a failed charge is logged for reconciliation and
        returned as ChargeResult(charged=False); it never raises. Under
        FAIL_OPERATION it raises ChargeFailed.
        """
        if cost == 0:
            return ChargeResult(True, organization_id, action_type, pool, cost)

        description = description or f"{action_type} ({cost} credits)"
        try:
            result = self.ledger.deduct(
                organization_id,
                pool,
                cost,
                TransactionType.PROCESSING,
                description,
                related_id=related_id,
                action_type=action_type,
            )
        except LedgerTransactionFailure as e:
            return self._charge_failed(organization_id, action_type, pool, cost, related_id, str(e), None)

        if not result.ok:
            return self._charge_failed(
                organization_id, action_type, pool, cost, related_id,
                "insufficient credits at commit", result.insufficient,
            )

        return ChargeResult(True, organization_id, action_type, pool, cost, balance=result.balance)

    def charge(
        self,
        organization_id: int,
        action_type: str,
        related_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ChargeResult:
        """
        Authorize and deduct in one atomic step, before the operation runs.

        Insufficient credits come back as ChargeResult(charged=False); ledger
        failures propagate since nothing has run yet.
        """
        pool = get_pool_for_action(action_type)
        cost = self.pricing.cost_of(action_type)
        if cost == 0:
            return ChargeResult(True, organization_id, action_type, pool, cost,
                                balance=self.ledger.get_pool_balance(organization_id, pool))

        result = self.ledger.deduct(
            organization_id,
            pool,
            cost,
            TransactionType.PROCESSING,
            description or f"{action_type} ({cost} credits)",
            related_id=related_id,
            action_type=action_type,
        )
        return ChargeResult(
            charged=result.ok,
            organization_id=organization_id,
            action_type=action_type,
            pool=pool,
            cost=cost,
            balance=result.balance,
            insufficient=result.insufficient,
        )

    def _charge_failed(self, organization_id, action_type, pool, cost, related_id, reason, insufficient):
        # Surfaced to operators via the log, never to the end user
        logger.error(
            f"Post-operation charge failed: org_id={organization_id}, action={action_type}, "
            f"pool={pool}, amount={cost}, related_id={related_id}, reason={reason}, "
            f"policy={self.on_charge_failure.value}"
        )
        if self.on_charge_failure is OnChargeFailure.FAIL_OPERATION:
            raise ChargeFailed(
                f"Could not charge {cost} {pool} credits for {action_type}: {reason}",
                required=cost,
                available=insufficient.available if insufficient else None,
            )
        return ChargeResult(
            charged=False,
            organization_id=organization_id,
            action_type=action_type,
            pool=pool,
            cost=cost,
            insufficient=insufficient,
            error=reason,
        )


def insufficient_credits_exception(required: int, available: int, pool: str, action_type: str) -> HTTPException:
    """HTTP 402 with enough detail for a client to offer a credit purchase."""
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "error": "insufficient_credits",
            "message": (
                f"Insufficient {pool} credits. Required: {required}, Available: {available}. "
                f"Please purchase more credits."
            ),
            "requiredCredits": required,
            "availableCredits": available,
            "pool": pool,
            "actionType": action_type,
        }
    )


def require_credits(action_type: str):
    """
    Dependency that authorizes an action before the route body runs.

    The route is responsible for calling CreditGuard.commit() once its work
    has succeeded.

    Raises:
        HTTPException 402: Insufficient credits with required/available amounts
    """
    from app.core.auth_dependency import get_current_organization_id
    from app.core.dependencies import get_credit_guard

    def credit_checker(
        organization_id: int = Depends(get_current_organization_id),
        guard: CreditGuard = Depends(get_credit_guard),
    ) -> Authorization:
        authorization = guard.authorize(organization_id, action_type)
        if not authorization.ok:
            raise insufficient_credits_exception(
                authorization.required, authorization.available, authorization.pool, action_type
            )
        return authorization

    return credit_checker
