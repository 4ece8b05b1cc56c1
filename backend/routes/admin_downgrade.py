"""Admin Downgrade Policy Routes.

Endpoints:
- GET /api/admin/downgrade-policy - Current decision mode and fallback plan
- PUT /api/admin/downgrade-policy - Update decision mode and/or fallback plan
- GET /api/admin/downgrade-requests - Request queue (optional ?status=)
- GET /api/admin/downgrade-requests/{request_id}/history - Audit trail for one request
- POST /api/admin/downgrade-requests/{request_id}/decision - Approve or reject
- POST /api/admin/listings/reconcile-expired - Run the expired listing fallback now

RULES:
1. A request is decided exactly once; a second decision is a 409.
2. Approval executes the downgrade (Stripe cancellation, then plan update).
3. Every policy change and decision is audit-logged.
"""
import logging
from typing import Optional
from fastapi import APIRouter, HTTPException, Request, Query, status, Depends
from pydantic import BaseModel
from database import database
from middleware import admin_route_guard
from models import DowngradeDecision, DowngradeDecisionMode, DowngradeRequestStatus
from utils.audit import get_request_history, record_policy_change
from services.policy_store import policy_store
from services.listing_reconciler import listing_reconciler
from services.downgrade_service import downgrade_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin-downgrade"], dependencies=[Depends(admin_route_guard)])


# =============================================================================
# Request Models
# =============================================================================

class DowngradePolicyUpdate(BaseModel):
    """Partial policy update; at least one field must be sent."""
    mode: Optional[DowngradeDecisionMode] = None
    expired_listing_plan_id: Optional[str] = None


class DecisionBody(BaseModel):
    decision: DowngradeDecision


# =============================================================================
# Policy
# =============================================================================

@router.get("/downgrade-policy")
async def get_downgrade_policy(request: Request):
    config = await policy_store.get_config()
    return config.model_dump(mode="json")


@router.put("/downgrade-policy")
async def update_downgrade_policy(request: Request, body: DowngradePolicyUpdate):
    """
    Update the downgrade policy.

    expired_listing_plan_id must name an existing active plan; an explicit
    null (or blank string) disables the fallback.
    """
    admin = await admin_route_guard(request)
    sent = body.model_fields_set
    if "mode" not in sent and "expired_listing_plan_id" not in sent:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide mode or expired_listing_plan_id"
        )

    before = await policy_store.get_config()

    fallback_plan_id = (body.expired_listing_plan_id or "").strip()
    if fallback_plan_id:
        db = database.get_db()
        plan = await db.pricing_plans.find_one(
            {"plan_id": fallback_plan_id},
            {"_id": 0, "plan_id": 1, "active": 1}
        )
        if not plan or not plan.get("active"):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Fallback plan must be an existing active plan"
            )

    if body.mode is not None:
        await policy_store.set_decision_mode(body.mode)

    if fallback_plan_id:
        await policy_store.set_fallback_plan_id(fallback_plan_id)
    elif "expired_listing_plan_id" in sent:
        await policy_store.set_fallback_plan_id(None)

    after = await policy_store.get_config()
    await record_policy_change(admin.get("user_id"), before, after)
    return after.model_dump(mode="json")


# =============================================================================
# Downgrade Requests
# =============================================================================

@router.get("/downgrade-requests")
async def list_downgrade_requests(
    request: Request,
    status_filter: Optional[str] = Query(default=None, alias="status"),
):
    """Newest first; an unknown status value is ignored rather than rejected."""
    try:
        wanted = DowngradeRequestStatus(status_filter) if status_filter else None
    except ValueError:
        wanted = None
    requests = await policy_store.list_downgrade_requests(status=wanted)
    return {
        "requests": [r.model_dump(mode="json") for r in requests],
        "total": len(requests),
    }


@router.get("/downgrade-requests/{request_id}/history")
async def get_downgrade_request_history(request: Request, request_id: str):
    downgrade_request = await policy_store.get_downgrade_request_by_id(request_id)
    if not downgrade_request:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Downgrade request not found.")

    history = await get_request_history(request_id)
    return {
        "request": downgrade_request.model_dump(mode="json"),
        "history": history,
    }


@router.post("/downgrade-requests/{request_id}/decision")
async def decide_downgrade_request(request: Request, request_id: str, body: DecisionBody):
    admin = await admin_route_guard(request)

    outcome = await downgrade_orchestrator.decide(
        request_id,
        body.decision,
        decider_id=admin.get("user_id"),
        decider_name=admin.get("name") or admin.get("email"),
    )

    return {
        "request": outcome.request.model_dump(mode="json"),
        "executed": outcome.executed,
        "cancelled_subscription_ids": outcome.cancelled_subscription_ids,
    }


# =============================================================================
# Expired Listing Fallback
# =============================================================================

@router.post("/listings/reconcile-expired")
async def reconcile_expired_listings(request: Request):
    """Run the expired listing fallback over all approved listings now."""
    changed = await listing_reconciler.reconcile_approved_listings()
    return {"message": f"Expired listings moved to fallback plan: {changed}", "count": changed}
