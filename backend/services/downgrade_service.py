"""Downgrade Orchestrator - move a listing to a lower plan.

Flow:
1. Owner asks to move a listing to a cheaper paid plan (request_downgrade).
   Free plans are never an owner-chosen target.
   - auto mode: executed right away
   - admin_approval mode: a pending DowngradeRequest is filed
2. Admin decides a pending request (decide): pending -> approved | rejected,
   exactly once. Approving executes the downgrade and only accepts a
   free target plan, so an owner-filed paid-to-paid request is refused (409)
   at approval.
3. Executing a downgrade cancels the owner's Stripe subscriptions for that
   listing immediately, then points the listing at the target plan.

Stripe cancellation and the local plan update are separate steps with no
shared transaction. A Stripe failure aborts before the plan pointer moves;
retrying is safe because already-canceled subscriptions are skipped.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from datetime import datetime, timezone
import logging

from database import database
from models import (
    AuditAction,
    DowngradeDecision,
    DowngradeDecisionMode,
    DowngradeRequest,
    DowngradeRequestStatus,
    EmailTemplateAlias,
    UserRole,
)
from services.email_service import EmailService, email_service
from services.policy_errors import ConflictError, NotFoundError, PolicyValidationError
from services.policy_store import DowngradePolicyStore, policy_store
from services.stripe_service import (
    StripeService,
    is_canceled,
    session_metadata,
    stripe_service,
    unique_subscription_ids,
)
from utils.audit import RESOURCE_DOWNGRADE_REQUEST, create_audit_log, record_plan_change, record_request_decision

logger = logging.getLogger(__name__)


def _plan_price(plan: Dict[str, Any]) -> float:
    try:
        return float(plan.get("price") or 0)
    except (TypeError, ValueError):
        return 0.0


@dataclass
class DowngradeResult:
    listing_id: str
    target_plan_id: str
    cancelled_subscription_ids: List[str] = field(default_factory=list)


@dataclass
class DecisionOutcome:
    request: DowngradeRequest
    executed: bool = False
    cancelled_subscription_ids: List[str] = field(default_factory=list)


@dataclass
class DowngradeRequestOutcome:
    mode: DowngradeDecisionMode
    request: Optional[DowngradeRequest] = None
    result: Optional[DowngradeResult] = None

    @property
    def requires_admin_approval(self) -> bool:
        return self.request is not None


class DowngradeOrchestrator:
    """Executes downgrades and runs the admin decision workflow."""

    def __init__(
        self,
        store: DowngradePolicyStore,
        billing: StripeService,
        mailer: Optional[EmailService] = None,
        db_provider: Optional[Callable[[], Any]] = None,
    ):
        self.store = store
        self.billing = billing
        self.mailer = mailer
        self._db_provider = db_provider or database.get_db

    @property
    def db(self):
        return self._db_provider()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def find_subscription_ids(
        self,
        owner_id: str,
        owner_email: Optional[str],
        listing_id: str,
        current_plan_id: Optional[str] = None,
    ) -> List[str]:
        """
        Subscriptions to cancel for this listing.

        Sessions tagged with the listing win; otherwise sessions tagged with
        the current plan (only when a current plan is known); otherwise none.
        """
        owned = await self.billing.list_owned_subscription_sessions(owner_id, owner_email)

        matched = [s for s in owned if session_metadata(s, "listing_id") == listing_id]
        if not matched and current_plan_id:
            matched = [s for s in owned if session_metadata(s, "plan_id") == current_plan_id]

        return unique_subscription_ids(matched)

    async def cancel_subscriptions(self, subscription_ids: List[str]) -> List[str]:
        """Cancel one at a time; already-canceled subscriptions are skipped."""
        cancelled = []
        for subscription_id in subscription_ids:
            subscription = await self.billing.retrieve_subscription(subscription_id)
            if is_canceled(subscription):
                logger.info(f"Subscription {subscription_id} already canceled; skipping")
                continue

            await self.billing.cancel_subscription(subscription_id)
            cancelled.append(subscription_id)
        return cancelled

    async def execute_plan_downgrade(
        self,
        owner_id: str,
        owner_email: Optional[str],
        listing_id: str,
        current_plan_id: Optional[str],
        target_plan_id: str,
    ) -> DowngradeResult:
        subscription_ids = await self.find_subscription_ids(
            owner_id, owner_email, listing_id, current_plan_id
        )
        cancelled = await self.cancel_subscriptions(subscription_ids)

        await self.db.listings.update_one(
            {"listing_id": listing_id},
            {"$set": {"plan_id": target_plan_id, "updated_at": datetime.now(timezone.utc)}}
        )
        logger.info(
            "Listing %s downgraded %s -> %s; cancelled %s subscription(s)",
            listing_id, current_plan_id, target_plan_id, len(cancelled)
        )

        await record_plan_change(
            listing_id,
            owner_id,
            current_plan_id,
            target_plan_id,
            subscription_ids=subscription_ids,
            cancelled_subscription_ids=cancelled,
        )
        return DowngradeResult(
            listing_id=listing_id,
            target_plan_id=target_plan_id,
            cancelled_subscription_ids=cancelled,
        )

    # ------------------------------------------------------------------
    # Admin decision workflow
    # ------------------------------------------------------------------
    async def _load_active_plan(self, plan_id: str, missing_error=ConflictError) -> Dict[str, Any]:
        plan = await self.db.pricing_plans.find_one(
            {"plan_id": plan_id},
            {"_id": 0, "plan_id": 1, "name": 1, "price": 1, "active": 1}
        )
        if not plan or not plan.get("active"):
            raise missing_error("Target plan is no longer valid.")
        return plan

    async def _load_free_target_plan(self, target_plan_id: str) -> Dict[str, Any]:
        plan = await self._load_active_plan(target_plan_id)
        if _plan_price(plan) > 0:
            raise ConflictError("Only free plans can be targeted by an approved downgrade.")
        return plan

    async def decide(
        self,
        request_id: str,
        decision: Union[DowngradeDecision, str],
        decider_id: str,
        decider_name: Optional[str] = None,
    ) -> DecisionOutcome:
        try:
            decision = DowngradeDecision(decision)
        except ValueError:
            raise PolicyValidationError(f"Invalid decision: {decision!r}. Expected 'approve' or 'reject'.")

        request = await self.store.get_downgrade_request_by_id(request_id)
        if not request:
            raise NotFoundError("Downgrade request not found.")
        if request.status != DowngradeRequestStatus.PENDING:
            raise ConflictError("Downgrade request is already processed.")

        if decision == DowngradeDecision.REJECT:
            decided = await self.store.decide_downgrade_request(
                request_id, DowngradeRequestStatus.REJECTED, decider_id, decider_name
            )
            await record_request_decision(decided)
            await self._notify(decided, EmailTemplateAlias.DOWNGRADE_REJECTED)
            return DecisionOutcome(request=decided)

        listing = await self.db.listings.find_one(
            {"listing_id": request.listing_id},
            {"_id": 0, "listing_id": 1, "owner_id": 1, "plan_id": 1}
        )
        if not listing or listing.get("owner_id") != request.owner_id:
            raise ConflictError("Listing no longer matches this downgrade request.")

        target_plan = await self._load_free_target_plan(request.target_plan_id)

        executed = False
        cancelled: List[str] = []
        if listing.get("plan_id") != target_plan["plan_id"]:
            result = await self.execute_plan_downgrade(
                owner_id=request.owner_id,
                owner_email=request.owner_email,
                listing_id=listing["listing_id"],
                current_plan_id=listing.get("plan_id"),
                target_plan_id=target_plan["plan_id"],
            )
            executed = True
            cancelled = result.cancelled_subscription_ids

        decided = await self.store.decide_downgrade_request(
            request_id, DowngradeRequestStatus.APPROVED, decider_id, decider_name
        )
        await record_request_decision(decided, executed=executed)
        await self._notify(decided, EmailTemplateAlias.DOWNGRADE_APPROVED)
        return DecisionOutcome(request=decided, executed=executed, cancelled_subscription_ids=cancelled)

    # ------------------------------------------------------------------
    # Owner request
    # ------------------------------------------------------------------
    async def request_downgrade(
        self,
        owner_id: str,
        owner_email: Optional[str],
        listing_id: str,
        target_plan_id: str,
        owner_name: Optional[str] = None,
    ) -> DowngradeRequestOutcome:
        """
        Owner asks to move a listing to a cheaper paid plan; mode decides what happens.

        Free plans are never an owner-chosen target; a listing only lands on
        one through the expiry fallback or an admin approval.
        """
        listing = await self.db.listings.find_one(
            {"listing_id": listing_id, "owner_id": owner_id},
            {"_id": 0, "listing_id": 1, "name": 1, "plan_id": 1}
        )
        if not listing:
            raise NotFoundError("Listing not found or not owned by current user.")

        target_plan = await self._load_active_plan(target_plan_id, missing_error=NotFoundError)
        current_plan_id = listing.get("plan_id")
        if current_plan_id == target_plan["plan_id"]:
            raise ConflictError("This listing is already on the selected plan.")

        current_plan = None
        if current_plan_id:
            current_plan = await self.db.pricing_plans.find_one(
                {"plan_id": current_plan_id},
                {"_id": 0, "plan_id": 1, "name": 1, "price": 1}
            )

        if not current_plan or _plan_price(target_plan) >= _plan_price(current_plan):
            raise ConflictError("Only a cheaper plan can be requested as a downgrade.")
        if _plan_price(target_plan) <= 0:
            raise ConflictError("Downgrading to a free plan is not allowed.")

        mode = await self.store.get_decision_mode()
        if mode == DowngradeDecisionMode.ADMIN_APPROVAL:
            request = await self.store.create_or_update_pending_request(
                owner_id,
                owner_email,
                listing_id,
                target_plan["plan_id"],
                owner_name=owner_name,
                listing_name=listing.get("name"),
                current_plan_id=current_plan_id,
                current_plan_name=(current_plan or {}).get("name"),
                target_plan_name=target_plan.get("name"),
            )
            await create_audit_log(
                action=AuditAction.DOWNGRADE_REQUESTED,
                actor_role=UserRole.ROLE_BUSINESS_OWNER,
                actor_id=owner_id,
                owner_id=owner_id,
                resource_type=RESOURCE_DOWNGRADE_REQUEST,
                resource_id=request.request_id,
                metadata={"listing_id": listing_id, "target_plan_id": target_plan["plan_id"]},
            )
            await self._notify(request, EmailTemplateAlias.DOWNGRADE_REQUESTED)
            return DowngradeRequestOutcome(mode=mode, request=request)

        result = await self.execute_plan_downgrade(
            owner_id=owner_id,
            owner_email=owner_email,
            listing_id=listing_id,
            current_plan_id=current_plan_id,
            target_plan_id=target_plan["plan_id"],
        )
        await self._send(
            owner_email,
            EmailTemplateAlias.PLAN_DOWNGRADED,
            {
                "owner_name": owner_name or "there",
                "listing_name": listing.get("name") or "Your listing",
                "target_plan_name": target_plan.get("name") or "selected",
            },
            owner_id,
        )
        return DowngradeRequestOutcome(mode=mode, result=result)

    # ------------------------------------------------------------------
    # Side effects that never fail the workflow
    # ------------------------------------------------------------------
    async def _notify(self, request: DowngradeRequest, alias: EmailTemplateAlias):
        await self._send(
            request.owner_email,
            alias,
            {
                "owner_name": request.owner_name or "there",
                "listing_name": request.listing_name or "Your listing",
                "target_plan_name": request.target_plan_name or "selected",
            },
            request.owner_id,
        )

    async def _send(self, recipient: Optional[str], alias: EmailTemplateAlias, model: Dict[str, Any], owner_id: str):
        if not self.mailer or not recipient:
            return
        try:
            await self.mailer.send_email(recipient, alias, model, owner_id=owner_id)
        except Exception as e:
            logger.error(f"Downgrade notification {alias.value} failed for owner {owner_id}: {e}")


downgrade_orchestrator = DowngradeOrchestrator(policy_store, stripe_service, email_service)
