"""Downgrade Policy Store - persisted downgrade configuration and request lifecycle.

Holds the process-wide downgrade policy (decision mode + fallback plan for
expired paid listings) as a single document in `policy_settings`, and the
owner downgrade requests in `downgrade_requests`.

The store is handed to the reconciler and the downgrade orchestrator rather
than read from module state, so tests and scripts can run against their own
database handle.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union
import logging
import os

from database import database
from models import (
    DowngradeDecisionMode,
    DowngradePolicyConfig,
    DowngradeRequest,
    DowngradeRequestStatus,
)
from services.policy_errors import NotFoundError, PolicyValidationError

logger = logging.getLogger(__name__)

POLICY_SETTING_ID = "downgrade_policy"
FALLBACK_PLAN_ENV = "EXPIRED_LISTING_PLAN_ID"


def _nullable_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _normalize_mode(value: Any) -> DowngradeDecisionMode:
    if value == DowngradeDecisionMode.ADMIN_APPROVAL.value:
        return DowngradeDecisionMode.ADMIN_APPROVAL
    return DowngradeDecisionMode.AUTO


class DowngradePolicyStore:
    """Read/write access to the downgrade policy singleton and downgrade requests."""

    def __init__(self, db_provider: Optional[Callable[[], Any]] = None):
        self._db_provider = db_provider or database.get_db

    @property
    def db(self):
        return self._db_provider()

    # ------------------------------------------------------------------
    # Policy singleton
    # ------------------------------------------------------------------
    async def _read_settings(self) -> Dict[str, Any]:
        doc = await self.db.policy_settings.find_one(
            {"setting_id": POLICY_SETTING_ID},
            {"_id": 0}
        )
        return doc or {}

    async def _write_settings(self, fields: Dict[str, Any]):
        fields = {**fields, "updated_at": datetime.now(timezone.utc)}
        await self.db.policy_settings.update_one(
            {"setting_id": POLICY_SETTING_ID},
            {"$set": fields},
            upsert=True
        )

    async def get_config(self) -> DowngradePolicyConfig:
        settings = await self._read_settings()
        fallback = _nullable_string(settings.get("expired_listing_plan_id"))
        if fallback is None:
            fallback = _nullable_string(os.getenv(FALLBACK_PLAN_ENV))
        return DowngradePolicyConfig(
            mode=_normalize_mode(settings.get("mode")),
            expired_listing_plan_id=fallback,
        )

    async def get_decision_mode(self) -> DowngradeDecisionMode:
        settings = await self._read_settings()
        return _normalize_mode(settings.get("mode"))

    async def set_decision_mode(self, mode: Union[DowngradeDecisionMode, str]) -> DowngradeDecisionMode:
        try:
            resolved = DowngradeDecisionMode(mode)
        except ValueError:
            raise PolicyValidationError(
                f"Invalid downgrade decision mode: {mode!r}. Expected 'auto' or 'admin_approval'."
            )
        await self._write_settings({"mode": resolved.value})
        logger.info("Downgrade decision mode set to %s", resolved.value)
        return resolved

    async def get_fallback_plan_id(self) -> Optional[str]:
        """Persisted fallback plan id, else the EXPIRED_LISTING_PLAN_ID env value."""
        config = await self.get_config()
        return config.expired_listing_plan_id

    async def set_fallback_plan_id(self, plan_id: Optional[str]) -> Optional[str]:
        """Persist the fallback plan id; None (or blank) disables the fallback."""
        value = _nullable_string(plan_id)
        await self._write_settings({"expired_listing_plan_id": value})
        logger.info("Expired listing fallback plan set to %s", value or "(disabled)")
        return value

    # ------------------------------------------------------------------
    # Downgrade requests
    # ------------------------------------------------------------------
    async def create_downgrade_request(
        self,
        owner_id: str,
        owner_email: Optional[str],
        listing_id: str,
        target_plan_id: str,
        **snapshot: Any,
    ) -> DowngradeRequest:
        """Always inserts a new pending request."""
        request = DowngradeRequest(
            owner_id=owner_id,
            owner_email=_nullable_string(owner_email),
            listing_id=listing_id,
            target_plan_id=target_plan_id,
            status=DowngradeRequestStatus.PENDING,
            **snapshot,
        )
        await self.db.downgrade_requests.insert_one(request.model_dump())
        logger.info(
            "Downgrade request %s created: owner=%s listing=%s target_plan=%s",
            request.request_id, owner_id, listing_id, target_plan_id
        )
        return request

    async def create_or_update_pending_request(
        self,
        owner_id: str,
        owner_email: Optional[str],
        listing_id: str,
        target_plan_id: str,
        **snapshot: Any,
    ) -> DowngradeRequest:
        """
        Refresh the owner's pending request for this listing, or create one.

        At most one pending request exists per owner+listing; re-submitting
        replaces its target and snapshot fields.
        """
        existing = await self.db.downgrade_requests.find_one(
            {
                "owner_id": owner_id,
                "listing_id": listing_id,
                "status": DowngradeRequestStatus.PENDING.value,
            },
            {"_id": 0}
        )
        if not existing:
            return await self.create_downgrade_request(
                owner_id, owner_email, listing_id, target_plan_id, **snapshot
            )

        updated = DowngradeRequest(
            **{
                **existing,
                **snapshot,
                "owner_email": _nullable_string(owner_email),
                "target_plan_id": target_plan_id,
                "updated_at": datetime.now(timezone.utc),
                "decided_at": None,
                "decided_by_id": None,
                "decided_by_name": None,
            }
        )
        await self.db.downgrade_requests.update_one(
            {"request_id": updated.request_id},
            {"$set": updated.model_dump(exclude={"request_id", "created_at"})}
        )
        logger.info("Downgrade request %s refreshed for listing %s", updated.request_id, listing_id)
        return updated

    async def list_downgrade_requests(
        self,
        status: Optional[DowngradeRequestStatus] = None,
        limit: int = 500,
    ) -> List[DowngradeRequest]:
        """Requests newest first, optionally filtered by status."""
        query: Dict[str, Any] = {}
        if status:
            query["status"] = DowngradeRequestStatus(status).value
        docs = await self.db.downgrade_requests.find(
            query,
            {"_id": 0}
        ).sort("created_at", -1).to_list(limit)
        return [DowngradeRequest(**doc) for doc in docs]

    async def get_downgrade_request_by_id(self, request_id: str) -> Optional[DowngradeRequest]:
        doc = await self.db.downgrade_requests.find_one(
            {"request_id": request_id},
            {"_id": 0}
        )
        return DowngradeRequest(**doc) if doc else None

    async def decide_downgrade_request(
        self,
        request_id: str,
        decision: Union[DowngradeRequestStatus, str],
        decider_id: str,
        decider_name: Optional[str] = None,
    ) -> DowngradeRequest:
        """
        Record an approve/reject decision.

        Does not re-check the current status: callers verify the request is
        still pending before deciding (see DowngradeOrchestrator.decide).
        """
        try:
            status = DowngradeRequestStatus(decision)
        except ValueError:
            raise PolicyValidationError(f"Invalid decision: {decision!r}")
        if status == DowngradeRequestStatus.PENDING:
            raise PolicyValidationError("A decision must be 'approved' or 'rejected'.")

        now = datetime.now(timezone.utc)
        fields = {
            "status": status.value,
            "updated_at": now,
            "decided_at": now,
            "decided_by_id": decider_id,
            "decided_by_name": _nullable_string(decider_name),
        }
        result = await self.db.downgrade_requests.update_one(
            {"request_id": request_id},
            {"$set": fields}
        )
        if not result.matched_count:
            raise NotFoundError("Downgrade request not found.")

        decided = await self.get_downgrade_request_by_id(request_id)
        if decided is None:
            raise NotFoundError("Downgrade request not found.")
        logger.info("Downgrade request %s %s by %s", request_id, status.value, decider_id)
        return decided


# Default store bound to the application database
policy_store = DowngradePolicyStore()
