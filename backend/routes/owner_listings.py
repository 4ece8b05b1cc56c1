"""Owner Dashboard Listing Plan Routes.

Endpoints:
- GET /api/dashboard/listings/{listing_id}/plan - Plan context (features, gallery limit)
- GET /api/dashboard/listings/{listing_id}/features/{feature_key} - Feature gate check
- POST /api/dashboard/listings/{listing_id}/downgrade - Move the listing to a cheaper paid plan

Entitlements are resolved fresh on every call; an expired paid listing is
moved to the fallback plan before its context is returned.
"""
import logging
from fastapi import APIRouter, HTTPException, Request, status, Depends
from pydantic import BaseModel, Field
from middleware import owner_route_guard
from models import AuditAction
from utils.audit import create_audit_log
from services.feature_catalog import is_feature_key, normalize_feature_key
from services.listing_entitlements import check_feature_access, entitlement_resolver
from services.downgrade_service import downgrade_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/dashboard/listings", tags=["owner-listings"], dependencies=[Depends(owner_route_guard)])


class DowngradeBody(BaseModel):
    target_plan_id: str = Field(min_length=1)


async def _resolve_context_or_404(owner_id: str, listing_id: str):
    context = await entitlement_resolver.resolve_context(owner_id, listing_id)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Listing not found or not owned by current user."
        )
    return context


@router.get("/{listing_id}/plan")
async def get_listing_plan(request: Request, listing_id: str):
    user = await owner_route_guard(request)
    context = await _resolve_context_or_404(user["user_id"], listing_id)
    return context.to_dict()


@router.get("/{listing_id}/features/{feature_key}")
async def check_listing_feature(request: Request, listing_id: str, feature_key: str):
    """
    Gate check for one feature.

    Legacy feature names are accepted and normalized. Returns 403 with the
    denial message when the listing's plan does not include the feature.
    """
    user = await owner_route_guard(request)

    key = normalize_feature_key(feature_key) or feature_key
    if not is_feature_key(key):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown feature: {feature_key}")

    context = await _resolve_context_or_404(user["user_id"], listing_id)
    denial = check_feature_access(context, key)
    if denial:
        await create_audit_log(
            action=AuditAction.PLAN_GATE_DENIED,
            actor_role=user.get("role"),
            actor_id=user["user_id"],
            owner_id=user["user_id"],
            resource_type="listing",
            resource_id=listing_id,
            metadata={
                "feature_key": key,
                "plan_id": context.plan_id,
                "has_active_plan": context.has_active_plan,
            },
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=denial)

    return {"listing_id": listing_id, "feature_key": key, "allowed": True}


@router.post("/{listing_id}/downgrade")
async def request_listing_downgrade(request: Request, listing_id: str, body: DowngradeBody):
    """
    Downgrade the listing to a cheaper paid plan.

    auto mode: executed immediately.
    admin_approval mode: a pending request is filed for an admin.
    """
    user = await owner_route_guard(request)

    outcome = await downgrade_orchestrator.request_downgrade(
        owner_id=user["user_id"],
        owner_email=user.get("email"),
        listing_id=listing_id,
        target_plan_id=body.target_plan_id.strip(),
        owner_name=user.get("name"),
    )

    if outcome.requires_admin_approval:
        return {
            "mode": outcome.mode.value,
            "status": "pending_approval",
            "request": outcome.request.model_dump(mode="json"),
            "message": "Your downgrade request was sent for admin approval.",
        }

    return {
        "mode": outcome.mode.value,
        "status": "downgraded",
        "listing_id": outcome.result.listing_id,
        "plan_id": outcome.result.target_plan_id,
        "cancelled_subscription_ids": outcome.result.cancelled_subscription_ids,
        "message": "Your listing was moved to the selected plan.",
    }
