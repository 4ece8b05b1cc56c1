"""Expired listing fallback - demote expired paid listings to the fallback plan.

A listing on a paid plan is expired once "now" is strictly after
created_at + plan duration. Expired listings are moved to the configured
fallback plan and unfeatured. The expiry clock is the listing's creation
date, not the date the current plan was assigned.

Reconciliation is an idempotent repair: it is safe to run on every read path
and from the scheduled sweep. The batch update is not transactional; a
listing missed because of a concurrent change is picked up on the next run.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

from database import database
from models import AuditAction, ListingStatus
from services.billing_duration import expiry_date
from services.policy_store import DowngradePolicyStore, policy_store
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

CANDIDATE_PROJECTION = {"_id": 0, "listing_id": 1, "created_at": 1, "plan_id": 1}
PLAN_PROJECTION = {"_id": 0, "plan_id": 1, "price": 1, "billing_period": 1, "duration_days": 1, "active": 1}


@dataclass(frozen=True)
class ReconcileScope:
    """Which listings a reconciliation pass looks at."""
    name: str
    query: Dict[str, Any] = field(default_factory=dict)
    single: bool = False

    @classmethod
    def approved_listings(cls) -> "ReconcileScope":
        return cls("approved", {"status": ListingStatus.APPROVED.value})

    @classmethod
    def owner(cls, owner_id: str) -> "ReconcileScope":
        return cls("owner", {"owner_id": owner_id})

    @classmethod
    def owned_listing(cls, owner_id: str, listing_id: str) -> "ReconcileScope":
        return cls("owned_listing", {"listing_id": listing_id, "owner_id": owner_id}, single=True)

    @classmethod
    def slug(cls, slug: str) -> "ReconcileScope":
        return cls("slug", {"slug": slug, "status": ListingStatus.APPROVED.value}, single=True)

    def candidate_filter(self) -> Dict[str, Any]:
        return {**self.query, "plan_id": {"$ne": None}}


def _as_aware(value: Any) -> Optional[datetime]:
    """Stored timestamps as aware datetimes; naive values are UTC (Motor default)."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def listing_expires_at(listing: Dict[str, Any], plan: Dict[str, Any]) -> Optional[datetime]:
    created_at = _as_aware(listing.get("created_at"))
    if created_at is None:
        return None
    return expiry_date(created_at, plan.get("billing_period"), plan.get("duration_days"))


def is_expired_paid_listing(listing: Dict[str, Any], plan: Optional[Dict[str, Any]], now: datetime) -> bool:
    """Paid plan whose window (from listing creation) ended strictly before now."""
    if not listing.get("plan_id") or not plan:
        return False
    if (plan.get("price") or 0) <= 0:
        return False
    expires_at = listing_expires_at(listing, plan)
    if expires_at is None:
        return False
    return _as_aware(now) > expires_at


class ExpiredListingReconciler:
    """Applies the expired-listing fallback plan within a scope."""

    def __init__(
        self,
        store: DowngradePolicyStore,
        db_provider: Optional[Callable[[], Any]] = None,
    ):
        self.store = store
        self._db_provider = db_provider or database.get_db

    @property
    def db(self):
        return self._db_provider()

    async def resolve_fallback_plan_id(self) -> Optional[str]:
        """Configured fallback plan id, only if that plan exists and is active."""
        configured_id = await self.store.get_fallback_plan_id()
        if not configured_id:
            return None

        fallback_plan = await self.db.pricing_plans.find_one(
            {"plan_id": configured_id},
            {"_id": 0, "plan_id": 1, "active": 1}
        )
        if not fallback_plan or not fallback_plan.get("active"):
            logger.warning("Expired listing fallback plan %s is missing or inactive; skipping", configured_id)
            return None
        return fallback_plan["plan_id"]

    async def _load_candidates(self, scope: ReconcileScope) -> List[Dict[str, Any]]:
        limit = 1 if scope.single else None
        return await self.db.listings.find(
            scope.candidate_filter(),
            CANDIDATE_PROJECTION
        ).to_list(limit)

    async def _load_plans(self, plan_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        if not plan_ids:
            return {}
        plans = await self.db.pricing_plans.find(
            {"plan_id": {"$in": plan_ids}},
            PLAN_PROJECTION
        ).to_list(None)
        return {plan["plan_id"]: plan for plan in plans}

    async def reconcile(self, scope: ReconcileScope, now: Optional[datetime] = None) -> int:
        """Demote expired paid listings in scope; returns how many were changed."""
        fallback_plan_id = await self.resolve_fallback_plan_id()
        if not fallback_plan_id:
            return 0

        candidates = await self._load_candidates(scope)
        candidates = [c for c in candidates if c.get("plan_id") and c["plan_id"] != fallback_plan_id]
        if not candidates:
            return 0

        plans = await self._load_plans(sorted({c["plan_id"] for c in candidates}))
        now = now or datetime.now(timezone.utc)
        expired_ids = [
            c["listing_id"] for c in candidates
            if is_expired_paid_listing(c, plans.get(c["plan_id"]), now)
        ]
        if not expired_ids:
            return 0

        result = await self.db.listings.update_many(
            {"listing_id": {"$in": expired_ids}},
            {"$set": {
                "plan_id": fallback_plan_id,
                "featured": False,
                "updated_at": datetime.now(timezone.utc),
            }}
        )
        changed = result.modified_count
        logger.info(
            "Expired listing fallback (%s): %s of %s expired listing(s) moved to plan %s",
            scope.name, changed, len(expired_ids), fallback_plan_id
        )

        if changed:
            await create_audit_log(
                action=AuditAction.EXPIRED_LISTING_FALLBACK_APPLIED,
                resource_type="listing",
                metadata={
                    "scope": scope.name,
                    "fallback_plan_id": fallback_plan_id,
                    "listing_ids": expired_ids,
                    "changed": changed,
                },
            )
        return changed

    async def reconcile_approved_listings(self, now: Optional[datetime] = None) -> int:
        return await self.reconcile(ReconcileScope.approved_listings(), now)

    async def reconcile_owner(self, owner_id: str, now: Optional[datetime] = None) -> int:
        return await self.reconcile(ReconcileScope.owner(owner_id), now)

    async def reconcile_owned_listing(self, owner_id: str, listing_id: str, now: Optional[datetime] = None) -> int:
        return await self.reconcile(ReconcileScope.owned_listing(owner_id, listing_id), now)

    async def reconcile_slug(self, slug: str, now: Optional[datetime] = None) -> int:
        return await self.reconcile(ReconcileScope.slug(slug), now)


listing_reconciler = ExpiredListingReconciler(policy_store)
