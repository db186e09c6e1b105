"""
Credit pool and action-type configuration.

Single source of truth for which pool an action draws from and the default
per-action pricing seeded into the credit_pricing table.
"""
from typing import Dict, List

CV_PROCESSING = "cv_processing"
INTERVIEW = "interview"

# Supported pools
CREDIT_POOLS: List[str] = [
    CV_PROCESSING,
    INTERVIEW,
]

# Action type -> pool it is charged against
ACTION_POOLS: Dict[str, str] = {
    "resume_processing": CV_PROCESSING,
    "ai_matching": CV_PROCESSING,
    "job_posting": CV_PROCESSING,
    "interview_scheduling": INTERVIEW,
}

# Fallback when an action has no active pricing row
DEFAULT_ACTION_COST = 1

DEFAULT_PRICING: List[Dict] = [
    {"action_type": "resume_processing", "cost": 1, "description": "Cost per resume processed and parsed"},
    {"action_type": "ai_matching", "cost": 2, "description": "Cost per AI candidate matching operation"},
    {"action_type": "job_posting", "cost": 5, "description": "Cost per job posting creation"},
    {"action_type": "interview_scheduling", "cost": 1, "description": "Cost per interview scheduled"},
]


class TransactionType:
    """Ledger entry types."""
    PROCESSING = "processing"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    REFUND = "refund"
    EXPIRATION = "expiration"

    ALL = (PROCESSING, MANUAL_ADJUSTMENT, SUBSCRIPTION, PURCHASE, REFUND, EXPIRATION)


def is_known_pool(pool: str) -> bool:
    """Check if the pool name is one the ledger tracks."""
    return pool in CREDIT_POOLS


def get_pool_for_action(action_type: str) -> str:
    """
    Get the pool an action type is charged against.

    Args:
        action_type: Action type (resume_processing, ai_matching, job_posting, interview_scheduling)

    Returns:
        Pool name

    Raises:
        ValueError: If the action type is unknown
    """
    pool = ACTION_POOLS.get(action_type)
    if pool is None:
        raise ValueError(f"Unknown action type: {action_type}")
    return pool
