"""
Pricing registry: credit cost per action type.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.credit_pools import ACTION_POOLS, DEFAULT_ACTION_COST, DEFAULT_PRICING
from app.db.models.credit import CreditPricing

logger = logging.getLogger(__name__)


class PricingRegistry:
    """Reads and administers the credit_pricing table."""

    def __init__(self, db: Session):
        self.db = db

    def cost_of(self, action_type: str) -> int:
        """
        Get the credit cost of an action.

        Args:
            action_type: Action type (resume_processing, interview_scheduling, ...)

        Returns:
            Cost of the active pricing row, or DEFAULT_ACTION_COST if none is configured
        """
        pricing = self.db.query(CreditPricing).filter(
            CreditPricing.action_type == action_type,
            CreditPricing.is_active.is_(True),
        ).order_by(CreditPricing.updated_at.desc(), CreditPricing.id.desc()).first()

        if not pricing:
            logger.warning(
                f"No active pricing for action_type={action_type}, using default of {DEFAULT_ACTION_COST}"
            )
            return DEFAULT_ACTION_COST

        return pricing.cost

    def all_pricing(self) -> List[CreditPricing]:
        return self.db.query(CreditPricing).order_by(CreditPricing.action_type, CreditPricing.id).all()

    def upsert(
        self,
        action_type: str,
        cost: int,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> CreditPricing:
        """
        Create or update the pricing row for an action type.

        Keeps at most one active row per action type: the first existing row is
        updated in place and any other rows for the action are deactivated.

        Raises:
            ValueError: Unknown action type or negative cost
        """
        if action_type not in ACTION_POOLS:
            raise ValueError(f"Unknown action type: {action_type}")
        if cost < 0:
            raise ValueError(f"Cost must be non-negative, got {cost}")

        rows = self.db.query(CreditPricing).filter(
            CreditPricing.action_type == action_type
        ).order_by(CreditPricing.id).all()

        if rows:
            pricing = rows[0]
            pricing.cost = cost
            pricing.description = description or pricing.description
            pricing.is_active = is_active
            for extra in rows[1:]:
                if extra.is_active:
                    logger.warning(f"Deactivating duplicate pricing row id={extra.id} for {action_type}")
                extra.is_active = False
            logger.info(f"Updated pricing for {action_type} to {cost} credits (active={is_active})")
        else:
            pricing = CreditPricing(
                action_type=action_type,
                cost=cost,
                description=description,
                is_active=is_active,
            )
            self.db.add(pricing)
            logger.info(f"Created pricing for {action_type}: {cost} credits")

        self.db.commit()
        self.db.refresh(pricing)
        return pricing

    def initialize_defaults(self) -> int:
        """Insert default pricing for action types that have none. Returns rows created."""
        created = 0
        for default in DEFAULT_PRICING:
            existing = self.db.query(CreditPricing).filter(
                CreditPricing.action_type == default["action_type"]
            ).first()
            if existing:
                continue
            self.upsert(default["action_type"], default["cost"], default["description"])
            created += 1

        logger.info(f"Default pricing initialized: created={created}")
        return created
