"""Stripe Service - billing collaborator for listing plans.

This service handles:
- Listing checkout sessions (plan purchases carry owner/listing/plan metadata)
- Retrieving subscription state
- Immediate cancellation (admin/orchestrated downgrades)
- Cancel-at-period-end scheduling (owner self-service)

Key Principles:
- Stripe is the source of truth for money; the app is the entitlement authority
- Checkout metadata includes owner_id, listing_id and plan_id for tracing
- Every StripeError leaves this module as BillingUpstreamError
"""
import stripe
import os
import logging
from typing import Optional, Dict, Any, List, Iterable

from services.policy_errors import BillingUpstreamError

logger = logging.getLogger(__name__)

# Initialize Stripe (no placeholder default; missing key fails at first call with clear error)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

CANCELED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "incomplete_expired"})
CHECKOUT_SESSION_LIST_LIMIT = 100


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict view of a StripeObject (or pass-through for dicts)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def session_metadata(session: Dict[str, Any], key: str) -> Optional[str]:
    metadata = session.get("metadata")
    if not isinstance(metadata, dict):
        return None
    value = metadata.get(key)
    return value if isinstance(value, str) else None


def session_email(session: Dict[str, Any]) -> Optional[str]:
    details = session.get("customer_details")
    if isinstance(details, dict) and isinstance(details.get("email"), str):
        return details["email"]
    email = session.get("customer_email")
    return email if isinstance(email, str) else None


def is_subscription_session(session: Dict[str, Any]) -> bool:
    """Subscription-mode checkout that produced a subscription reference."""
    subscription = session.get("subscription")
    if not isinstance(subscription, str) or not subscription:
        return False
    if session_metadata(session, "payment_mode") == "one_time":
        return False
    mode = session.get("mode")
    return mode in (None, "subscription")


def is_owned_session(session: Dict[str, Any], owner_id: str, owner_email: Optional[str] = None) -> bool:
    if session_metadata(session, "owner_id") == owner_id:
        return True
    return bool(owner_email) and session_email(session) == owner_email


def is_canceled(subscription: Dict[str, Any]) -> bool:
    return subscription.get("status") in CANCELED_SUBSCRIPTION_STATUSES


class StripeService:
    """Stripe billing operations service."""

    def _ensure_configured(self):
        if not (stripe.api_key or "").strip():
            raise BillingUpstreamError("STRIPE_SECRET_KEY is not set. Configure env and restart.")

    async def list_checkout_sessions(
        self,
        limit: int = CHECKOUT_SESSION_LIST_LIMIT,
        subscription_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Most recent checkout sessions, optionally narrowed to one subscription."""
        self._ensure_configured()
        params: Dict[str, Any] = {"limit": min(max(limit, 1), CHECKOUT_SESSION_LIST_LIMIT)}
        if subscription_id:
            params["subscription"] = subscription_id
        try:
            sessions = stripe.checkout.Session.list(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session list error: {e}")
            raise BillingUpstreamError(f"Failed to list checkout sessions: {str(e)}")

        data = _as_dict(sessions).get("data")
        if not isinstance(data, list):
            raise BillingUpstreamError("Unexpected checkout session list response from Stripe")
        return [_as_dict(item) for item in data]

    async def list_owned_subscription_sessions(
        self,
        owner_id: str,
        owner_email: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Subscription checkout sessions belonging to an owner (by metadata or email)."""
        sessions = await self.list_checkout_sessions()
        return [
            session for session in sessions
            if is_subscription_session(session) and is_owned_session(session, owner_id, owner_email)
        ]

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._ensure_configured()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe subscription retrieve error for {subscription_id}: {e}")
            raise BillingUpstreamError(f"Failed to retrieve subscription: {str(e)}")
        return _as_dict(subscription)

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Cancel immediately (not at period end)."""
        self._ensure_configured()
        try:
            subscription = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe cancel error for subscription {subscription_id}: {e}")
            raise BillingUpstreamError(f"Failed to cancel subscription: {str(e)}")
        logger.info(f"Subscription cancelled immediately: {subscription_id}")
        return _as_dict(subscription)

    async def schedule_cancellation(self, subscription_id: str) -> Dict[str, Any]:
        """Flag the subscription to cancel at the end of the current period."""
        self._ensure_configured()
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe cancel-at-period-end error for subscription {subscription_id}: {e}")
            raise BillingUpstreamError(f"Failed to schedule subscription cancellation: {str(e)}")
        logger.info(f"Subscription cancellation scheduled at period end: {subscription_id}")
        return _as_dict(subscription)

    async def owner_can_manage(
        self,
        subscription_id: str,
        owner_id: str,
        owner_email: Optional[str] = None,
    ) -> bool:
        sessions = await self.list_checkout_sessions(limit=10, subscription_id=subscription_id)
        return any(is_owned_session(session, owner_id, owner_email) for session in sessions)


def unique_subscription_ids(sessions: Iterable[Dict[str, Any]]) -> List[str]:
    """Subscription ids in first-seen order, de-duplicated."""
    seen = []
    for session in sessions:
        subscription = session.get("subscription")
        if isinstance(subscription, str) and subscription and subscription not in seen:
            seen.append(subscription)
    return seen


# Singleton instance
stripe_service = StripeService()
