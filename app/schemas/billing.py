"""
Pydantic schemas for billing endpoints.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class CreditPackageResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    credit_amount: int
    pool: str
    price: int = Field(..., description="Price in minor units")
    currency: str

    class Config:
        from_attributes = True


class CreditCheckoutRequest(BaseModel):
    """Request schema for buying a credit package."""
    credit_package_id: int = Field(..., description="Credit package to purchase")
    success_url: Optional[str] = Field(None, description="URL to redirect after successful payment")
    cancel_url: Optional[str] = Field(None, description="URL to redirect if payment is canceled")

    class Config:
        json_schema_extra = {
            "example": {
                "credit_package_id": 2,
                "success_url": "https://app.talentledger.io/billing?purchase=success",
                "cancel_url": "https://app.talentledger.io/billing?purchase=cancelled"
            }
        }


class CheckoutSessionResponse(BaseModel):
    """Response schema for checkout session creation."""
    checkout_url: Optional[str] = Field(None, description="Stripe checkout session URL")
    session_id: str = Field(..., description="Stripe checkout session ID")
    payment_attempt_id: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "checkout_url": "https://checkout.stripe.com/pay/cs_test_...",
                "session_id": "cs_test_...",
                "payment_attempt_id": 17
            }
        }


class PaymentTransactionResponse(BaseModel):
    id: int
    stripe_checkout_session_id: str
    credit_package_id: int
    amount: int
    currency: str
    status: str
    pool: str
    credits_purchased: int
    credits_added: int
    refunded_amount: int
    refunded_credits: int
    refund_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Reason recorded with the refund")


class SubscriptionPlanResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    monthly_price: int
    yearly_price: int
    currency: str
    monthly_cv_credits: int
    monthly_interview_credits: int
    job_posts_limit: Optional[int] = None
    support_level: str

    class Config:
        from_attributes = True


class SubscriptionCheckoutRequest(BaseModel):
    plan_id: int
    billing_cycle: str = Field("monthly", pattern="^(monthly|yearly)$")
    trial_days: Optional[int] = Field(None, ge=1, le=90)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {"plan_id": 2, "billing_cycle": "yearly"}
        }


class SubscriptionResponse(BaseModel):
    id: int
    organization_id: int
    plan_id: int
    stripe_subscription_id: str
    billing_cycle: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobPostUsageResponse(BaseModel):
    used: int
    limit: Optional[int] = Field(None, description="None means unlimited")
    allowed: bool = Field(..., description="Whether another job post fits in the current period")


class CurrentSubscriptionResponse(BaseModel):
    """Response schema for GET /billing/subscription."""
    subscription: Optional[SubscriptionResponse] = None
    plan: Optional[SubscriptionPlanResponse] = None
    job_posts: Optional[JobPostUsageResponse] = None


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = Field(False, description="Cancel now instead of at the end of the billing period")


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
