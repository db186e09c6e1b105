"""
Billing endpoints: credit packages, credit purchases and subscriptions.
"""
import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.auth_dependency import get_current_organization_id, get_current_user_obj
from app.core.dependencies import get_payment_processor, get_subscription_manager
from app.core.subscription_guard import job_posts_limit_exception, require_job_post_quota
from app.db.models.subscription import OrganizationSubscription
from app.db.models.user import User
from app.schemas.billing import (
    CancelSubscriptionRequest,
    CheckoutSessionResponse,
    CreditCheckoutRequest,
    CreditPackageResponse,
    CurrentSubscriptionResponse,
    JobPostUsageResponse,
    PaymentTransactionResponse,
    SubscriptionCheckoutRequest,
    SubscriptionPlanResponse,
    SubscriptionResponse,
)
from app.services.payment_processor import PaymentEventProcessor
from app.services.subscription_lifecycle import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


# ✅ CREDIT PACKAGES

@router.get("/packages", response_model=List[CreditPackageResponse])
def list_packages(processor: PaymentEventProcessor = Depends(get_payment_processor)):
    return processor.list_packages()


@router.post("/credit-checkout", response_model=CheckoutSessionResponse)
def create_credit_checkout(
    request: CreditCheckoutRequest,
    user: User = Depends(get_current_user_obj),
    organization_id: int = Depends(get_current_organization_id),
    processor: PaymentEventProcessor = Depends(get_payment_processor),
):
    """
    Start a Stripe checkout for a credit package.

    Credits are granted when the checkout.session.completed webhook arrives,
    never by this endpoint.
    """
    result = processor.create_checkout(
        organization_id,
        request.credit_package_id,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        customer_email=user.email,
    )
    return {
        "checkout_url": result["url"],
        "session_id": result["session_id"],
        "payment_attempt_id": result["payment_attempt_id"],
    }


@router.get("/payments", response_model=List[PaymentTransactionResponse])
def payment_history(
    limit: int = Query(50, ge=1, le=200),
    organization_id: int = Depends(get_current_organization_id),
    processor: PaymentEventProcessor = Depends(get_payment_processor),
):
    return processor.payment_history(organization_id, limit=limit)


# ✅ SUBSCRIPTIONS

@router.get("/plans", response_model=List[SubscriptionPlanResponse])
def list_plans(manager: SubscriptionLifecycleManager = Depends(get_subscription_manager)):
    return manager.list_plans()


@router.post("/subscription-checkout", response_model=CheckoutSessionResponse)
def create_subscription_checkout(
    request: SubscriptionCheckoutRequest,
    user: User = Depends(get_current_user_obj),
    organization_id: int = Depends(get_current_organization_id),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    try:
        result = manager.create_checkout(
            organization_id,
            request.plan_id,
            billing_cycle=request.billing_cycle,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            customer_email=user.email,
            trial_days=request.trial_days,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"checkout_url": result["url"], "session_id": result["session_id"]}


@router.get("/subscription", response_model=CurrentSubscriptionResponse)
def get_subscription(
    organization_id: int = Depends(get_current_organization_id),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    subscription = manager.get_active_subscription(organization_id)
    if not subscription:
        return {"subscription": None, "plan": None, "job_posts": None}

    quota = manager.job_post_quota(subscription)
    return {
        "subscription": subscription,
        "plan": manager.get_plan(subscription.plan_id),
        "job_posts": {"used": quota.used, "limit": quota.limit, "allowed": quota.allowed},
    }


@router.post("/subscription/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    request: CancelSubscriptionRequest,
    organization_id: int = Depends(get_current_organization_id),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    """
    Ask Stripe to cancel the subscription. The returned record reflects the
    state before cancellation; it changes once Stripe confirms via webhook.
    """
    return manager.request_cancellation(organization_id, immediate=request.immediate)


@router.post("/subscription/job-posts", response_model=JobPostUsageResponse)
def record_job_post(
    subscription: OrganizationSubscription = Depends(require_job_post_quota),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    """
    Count a newly created job post against the plan's limit.

    Returns 403 when the limit for the current period is already reached.
    """
    if not manager.record_job_post(subscription):
        raise job_posts_limit_exception(manager.job_post_quota(subscription))

    quota = manager.job_post_quota(subscription)
    return {"used": quota.used, "limit": quota.limit, "allowed": quota.allowed}
