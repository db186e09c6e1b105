"""
Pydantic schemas for credit endpoints.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class BalanceResponse(BaseModel):
    """Response schema for GET /credits/balance."""
    organization_id: int = Field(..., description="Organization ID")
    balances: Dict[str, int] = Field(..., description="Current balance per credit pool")

    class Config:
        json_schema_extra = {
            "example": {
                "organization_id": 42,
                "balances": {"cv_processing": 150, "interview": 20}
            }
        }


class CreditTransactionResponse(BaseModel):
    """Single ledger entry."""
    id: int
    pool: str
    amount: int = Field(..., description="Signed amount, negative for deductions")
    type: str = Field(..., description="processing, manual_adjustment, subscription, purchase, refund or expiration")
    action_type: Optional[str] = None
    related_id: Optional[str] = None
    description: Optional[str] = None
    balance_after: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreditHistoryResponse(BaseModel):
    organization_id: int
    transactions: List[CreditTransactionResponse]


class PoolUsage(BaseModel):
    added: int
    deducted: int


class UsageStatsResponse(BaseModel):
    """Response schema for GET /credits/usage."""
    organization_id: int
    total_added: int = Field(..., description="Credits granted across all pools")
    total_deducted: int = Field(..., description="Credits deducted across all pools")
    pools: Dict[str, PoolUsage]
    deductions_by_type: Dict[str, int] = Field(..., description="Number of deductions per transaction type")
    deductions_by_action: Dict[str, int] = Field(..., description="Number of deductions per action type")


class AuthorizeRequest(BaseModel):
    action_type: str = Field(..., description="Action to authorize (resume_processing, interview_scheduling, ...)")

    class Config:
        json_schema_extra = {
            "example": {"action_type": "resume_processing"}
        }


class AuthorizeResponse(BaseModel):
    authorized: bool
    action_type: str
    pool: str
    required_credits: int
    available_credits: int


class ConsumeRequest(BaseModel):
    action_type: str = Field(..., description="Action being paid for")
    related_id: Optional[str] = Field(None, description="ID of the entity the charge relates to (resume, interview)")

    class Config:
        json_schema_extra = {
            "example": {"action_type": "resume_processing", "related_id": "resume_981"}
        }


class ConsumeResponse(BaseModel):
    charged: bool
    action_type: str
    pool: str
    cost: int
    balance: int = Field(..., description="Pool balance after the charge")


class PricingResponse(BaseModel):
    id: int
    action_type: str
    cost: int
    description: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


class PricingUpdateRequest(BaseModel):
    action_type: str
    cost: int = Field(..., ge=0, description="Credits charged per action")
    description: Optional[str] = None
    is_active: bool = True

    class Config:
        json_schema_extra = {
            "example": {"action_type": "ai_matching", "cost": 3, "description": "AI matching run"}
        }


class CreditAdjustmentRequest(BaseModel):
    """Manual credit adjustment by a super admin."""
    organization_id: int
    pool: str = Field(..., description="cv_processing or interview")
    amount: int = Field(..., description="Positive to add credits, negative to remove them")
    reason: str = Field(..., min_length=1, description="Why the adjustment was made")

    class Config:
        json_schema_extra = {
            "example": {
                "organization_id": 42,
                "pool": "cv_processing",
                "amount": 100,
                "reason": "Goodwill credit for outage"
            }
        }


class CreditAdjustmentResponse(BaseModel):
    organization_id: int
    pool: str
    amount: int
    balance: int


class PoolReconciliation(BaseModel):
    balance: int
    ledger_sum: int
    matches: bool


class ReconciliationResponse(BaseModel):
    organization_id: int
    pools: Dict[str, PoolReconciliation]
    consistent: bool


class CreditLotResponse(BaseModel):
    """Expiring grant of credits."""
    id: int
    pool: str
    credit_amount: int
    remaining_credits: int = Field(..., description="Unspent credits that will expire")
    source: str
    source_id: Optional[str] = None
    expires_at: datetime

    class Config:
        from_attributes = True


class ExpiringCreditsResponse(BaseModel):
    """Response schema for GET /credits/expiring."""
    organization_id: int
    within_days: int
    total_expiring: int
    lots: List[CreditLotResponse]


class ExpiredLotResponse(BaseModel):
    lot_id: int
    organization_id: int
    pool: str
    expired_credits: int


class ExpirationRunResponse(BaseModel):
    expired: List[ExpiredLotResponse]
    total_expired_credits: int
