"""Audit trail for listing plans and the downgrade workflow.

Entries land in ``audit_logs`` and are keyed by resource so the admin
request history can be replayed. Writing an entry never fails the
operation that produced it.
"""
from database import database
from models import (
    AuditAction,
    AuditLog,
    DowngradePolicyConfig,
    DowngradeRequest,
    DowngradeRequestStatus,
    UserRole,
)
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

RESOURCE_LISTING = "listing"
RESOURCE_DOWNGRADE_REQUEST = "downgrade_request"
RESOURCE_POLICY = "policy_settings"


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Write one entry; returns its id, or "" when the write failed."""
    entry = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        owner_id=owner_id,
        resource_type=resource_type,
        resource_id=resource_id,
        before_state=before_state,
        after_state=after_state,
        metadata=metadata or None,
    )
    try:
        await database.get_db().audit_logs.insert_one(entry.model_dump())
    except Exception as e:
        logger.error(f"Audit entry {action.value} for {resource_type}/{resource_id} not written: {e}")
        return ""

    logger.info(f"Audit: {action.value} {resource_type or '-'}/{resource_id or '-'}")
    return entry.audit_id


async def record_plan_change(
    listing_id: str,
    owner_id: Optional[str],
    from_plan_id: Optional[str],
    to_plan_id: str,
    subscription_ids: Optional[List[str]] = None,
    cancelled_subscription_ids: Optional[List[str]] = None,
) -> str:
    """A listing's plan pointer moved as part of a downgrade."""
    return await create_audit_log(
        action=AuditAction.DOWNGRADE_EXECUTED,
        owner_id=owner_id,
        resource_type=RESOURCE_LISTING,
        resource_id=listing_id,
        before_state={"plan_id": from_plan_id},
        after_state={"plan_id": to_plan_id},
        metadata={
            "matched_subscription_ids": subscription_ids or [],
            "cancelled_subscription_ids": cancelled_subscription_ids or [],
        },
    )


async def record_request_decision(request: DowngradeRequest, executed: bool = False) -> str:
    """An admin moved a request out of pending."""
    action = (
        AuditAction.DOWNGRADE_APPROVED
        if request.status == DowngradeRequestStatus.APPROVED
        else AuditAction.DOWNGRADE_REJECTED
    )
    return await create_audit_log(
        action=action,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=request.decided_by_id,
        owner_id=request.owner_id,
        resource_type=RESOURCE_DOWNGRADE_REQUEST,
        resource_id=request.request_id,
        before_state={"status": "pending"},
        after_state={"status": request.status.value},
        metadata={
            "listing_id": request.listing_id,
            "target_plan_id": request.target_plan_id,
            "decided_by_name": request.decided_by_name,
            "executed": executed,
        },
    )


async def record_policy_change(
    admin_id: Optional[str],
    before: DowngradePolicyConfig,
    after: DowngradePolicyConfig,
) -> str:
    """Policy edit; only the settings that actually changed are kept."""
    old = before.model_dump(mode="json")
    new = after.model_dump(mode="json")
    changed = [key for key in new if old.get(key) != new.get(key)]
    return await create_audit_log(
        action=AuditAction.DOWNGRADE_POLICY_UPDATED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=admin_id,
        resource_type=RESOURCE_POLICY,
        resource_id="downgrade_policy",
        before_state={key: old.get(key) for key in changed},
        after_state={key: new.get(key) for key in changed},
    )


async def get_request_history(request_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Entries for one downgrade request, oldest first."""
    try:
        cursor = database.get_db().audit_logs.find(
            {"resource_type": RESOURCE_DOWNGRADE_REQUEST, "resource_id": request_id},
            {"_id": 0}
        ).sort("timestamp", 1).limit(limit)
        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to load history for downgrade request {request_id}: {e}")
        return []
