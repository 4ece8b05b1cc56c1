"""Owner subscription self-service.

Owners see the Stripe subscriptions created by their plan checkouts and can
schedule one to end at the close of its billing period. Immediate
cancellation only happens through an executed downgrade.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from models import AuditAction, UserRole
from services.policy_errors import ForbiddenError
from services.stripe_service import (
    StripeService,
    is_canceled,
    session_email,
    session_metadata,
    stripe_service,
    unique_subscription_ids,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _iso_from_epoch(value: Any) -> Optional[str]:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def subscription_summary(subscription: Dict[str, Any]) -> Dict[str, Any]:
    period_end = subscription.get("current_period_end")
    return {
        "subscription_id": subscription.get("id"),
        "status": subscription.get("status"),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "current_period_end": period_end if isinstance(period_end, int) else None,
    }


class SubscriptionService:
    def __init__(self, billing: StripeService):
        self.billing = billing

    async def list_owner_subscriptions(self, owner_id: str, owner_email: Optional[str]) -> List[Dict[str, Any]]:
        """One row per owned checkout session, newest first."""
        sessions = await self.billing.list_owned_subscription_sessions(owner_id, owner_email)

        subscriptions = {}
        for subscription_id in unique_subscription_ids(sessions):
            subscriptions[subscription_id] = await self.billing.retrieve_subscription(subscription_id)

        rows = []
        for session in sessions:
            subscription = subscriptions.get(session.get("subscription"))
            if not subscription:
                continue
            rows.append({
                **subscription_summary(subscription),
                "subscription_id": session["subscription"],
                "created_at": _iso_from_epoch(session.get("created")),
                "customer_email": session_email(session),
                "listing_id": session_metadata(session, "listing_id"),
                "plan_id": session_metadata(session, "plan_id"),
                "amount_total": session.get("amount_total") or 0,
                "currency": session.get("currency") or "gbp",
                "checkout_session_id": session.get("id"),
            })

        rows.sort(key=lambda row: row["created_at"] or "", reverse=True)
        return rows

    async def schedule_cancellation(self, subscription_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        """Cancel at period end; admins may act on any subscription."""
        subscription = await self.billing.retrieve_subscription(subscription_id)

        if user.get("role") != UserRole.ROLE_ADMIN.value:
            allowed = await self.billing.owner_can_manage(
                subscription_id, user.get("user_id"), user.get("email")
            )
            if not allowed:
                raise ForbiddenError("You cannot manage this subscription.")

        if is_canceled(subscription) or subscription.get("cancel_at_period_end"):
            return {
                "ok": True,
                **subscription_summary(subscription),
                "message": "Subscription already cancelled.",
            }

        updated = await self.billing.schedule_cancellation(subscription_id)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELLATION_SCHEDULED,
            actor_role=user.get("role"),
            actor_id=user.get("user_id"),
            resource_type="subscription",
            resource_id=subscription_id,
            before_state={"cancel_at_period_end": False},
            after_state={"cancel_at_period_end": True},
        )
        return {
            "ok": True,
            **subscription_summary(updated),
            "message": "Subscription cancellation scheduled.",
        }


subscription_service = SubscriptionService(stripe_service)
