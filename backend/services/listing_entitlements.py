"""Listing entitlements - what a listing's current plan lets its owner use.

Entitlements are always derived from the listing's plan document at read time
(active flag + feature list); nothing is cached on the listing. Each resolve
first runs the expired-listing fallback for that one listing so an expired
paid plan is never reported as active.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set
import logging

from database import database
from services.billing_duration import duration_label
from services.feature_catalog import feature_label, normalize_features, ordered_features
from services.listing_reconciler import ExpiredListingReconciler, listing_reconciler

logger = logging.getLogger(__name__)

ACTIVE_PLAN_REQUIRED_MESSAGE = "An active pricing plan is required to use this feature."


@dataclass
class ListingPlanContext:
    listing_id: str
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    has_active_plan: bool = False
    enabled_features: Set[str] = field(default_factory=set)
    gallery_limit: int = 0
    duration: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listing_id": self.listing_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan_name,
            "has_active_plan": self.has_active_plan,
            "enabled_features": ordered_features(self.enabled_features),
            "gallery_limit": self.gallery_limit,
            "duration": self.duration,
        }


def build_plan_context(listing_id: str, plan: Optional[Dict[str, Any]]) -> ListingPlanContext:
    """Context for a listing given its (possibly missing) plan document."""
    has_active_plan = bool(plan and plan.get("plan_id") and plan.get("active"))
    if not has_active_plan:
        return ListingPlanContext(
            listing_id=listing_id,
            plan_id=plan.get("plan_id") if plan else None,
            plan_name=plan.get("name") if plan else None,
        )

    try:
        gallery_limit = max(int(plan.get("gallery_limit") or 0), 0)
    except (TypeError, ValueError):
        gallery_limit = 0

    return ListingPlanContext(
        listing_id=listing_id,
        plan_id=plan["plan_id"],
        plan_name=plan.get("name"),
        has_active_plan=True,
        enabled_features=normalize_features(plan.get("features")),
        gallery_limit=gallery_limit,
        duration=duration_label(plan.get("billing_period"), plan.get("duration_days")),
    )


def check_feature_access(context: ListingPlanContext, feature_key: str) -> Optional[str]:
    """Denial message for a feature, or None when the plan includes it."""
    if not context.has_active_plan:
        return ACTIVE_PLAN_REQUIRED_MESSAGE

    if feature_key not in context.enabled_features:
        label = feature_label(feature_key).lower()
        return f"Your current plan does not include {label}. Please upgrade your plan to continue."

    return None


class EntitlementResolver:
    """Resolves the plan context of an owner's listing."""

    def __init__(
        self,
        reconciler: ExpiredListingReconciler,
        db_provider: Optional[Callable[[], Any]] = None,
    ):
        self.reconciler = reconciler
        self._db_provider = db_provider or database.get_db

    @property
    def db(self):
        return self._db_provider()

    async def resolve_context(self, owner_id: str, listing_id: str) -> Optional[ListingPlanContext]:
        """Plan context for the listing, or None if the owner has no such listing."""
        try:
            await self.reconciler.reconcile_owned_listing(owner_id, listing_id)
        except Exception as e:
            # Best-effort repair; the read still answers from current state
            logger.error(
                "Expired listing fallback failed for owner=%s listing=%s: %s",
                owner_id, listing_id, e
            )

        listing = await self.db.listings.find_one(
            {"listing_id": listing_id, "owner_id": owner_id},
            {"_id": 0, "listing_id": 1, "plan_id": 1}
        )
        if not listing:
            return None

        plan = None
        if listing.get("plan_id"):
            plan = await self.db.pricing_plans.find_one(
                {"plan_id": listing["plan_id"]},
                {"_id": 0, "plan_id": 1, "name": 1, "active": 1, "features": 1, "gallery_limit": 1,
                 "billing_period": 1, "duration_days": 1}
            )

        return build_plan_context(listing["listing_id"], plan)


entitlement_resolver = EntitlementResolver(listing_reconciler)
