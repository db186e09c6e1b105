from fastapi import Depends, HTTPException, status

from app.core.auth_dependency import get_current_organization_id
from app.core.dependencies import get_subscription_manager
from app.db.models.subscription import OrganizationSubscription
from app.services.subscription_lifecycle import SubscriptionLifecycleManager


def require_active_subscription(
    organization_id: int = Depends(get_current_organization_id),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> OrganizationSubscription:
    """
    Dependency that requires an active or trialing subscription.

    A past_due subscription is still accepted during the grace period.

    Raises:
        HTTPException 402: No usable subscription
    """
    subscription = manager.get_active_subscription(organization_id)

    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "subscription_required",
                "message": "An active subscription is required. Please subscribe to a plan.",
            }
        )

    if not manager.is_usable(subscription):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "subscription_past_due",
                "message": "Your subscription payment is overdue. Please update your payment method.",
                "status": subscription.status,
            }
        )

    return subscription


def require_job_post_quota(
    subscription: OrganizationSubscription = Depends(require_active_subscription),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> OrganizationSubscription:
    """
    Dependency that requires room for another job post in the current period.

    The route records the post with SubscriptionLifecycleManager.record_job_post()
    once it has been created.

    Raises:
        HTTPException 402: No usable subscription
        HTTPException 403: The plan's job post limit is reached
    """
    quota = manager.job_post_quota(subscription)
    if not quota.allowed:
        raise job_posts_limit_exception(quota)
    return subscription


def job_posts_limit_exception(quota) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": "job_posts_limit_reached",
            "message": f"You've reached the job posting limit for your {quota.plan_name} plan",
            "currentPlan": quota.plan_name,
            "limit": quota.limit,
            "used": quota.used,
            "upgradeRequired": True,
        }
    )
