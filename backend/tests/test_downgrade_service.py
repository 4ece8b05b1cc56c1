"""
Downgrade orchestrator tests.
Subscription selection, cancellation, decision workflow, owner requests.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import make_collection, make_db
from models import DowngradeDecisionMode, DowngradeRequest, DowngradeRequestStatus, EmailTemplateAlias
from services.downgrade_service import DowngradeOrchestrator
from services.policy_errors import BillingUpstreamError, ConflictError, NotFoundError, PolicyValidationError

FREE = {"plan_id": "free", "name": "Free", "price": 0, "active": True}
PRO = {"plan_id": "pro", "name": "Pro", "price": 29, "active": True}
STARTER = {"plan_id": "starter", "name": "Starter", "price": 9, "active": True}


def _session(subscription, listing_id=None, plan_id=None, owner_id="owner-1"):
    metadata = {"owner_id": owner_id}
    if listing_id:
        metadata["listing_id"] = listing_id
    if plan_id:
        metadata["plan_id"] = plan_id
    return {"id": f"cs_{subscription}", "subscription": subscription, "mode": "subscription", "metadata": metadata}


def _billing(sessions=(), statuses=None, cancel_error=None):
    statuses = statuses or {}
    billing = MagicMock()
    billing.list_owned_subscription_sessions = AsyncMock(return_value=list(sessions))
    billing.retrieve_subscription = AsyncMock(
        side_effect=lambda sub_id: {"id": sub_id, "status": statuses.get(sub_id, "active")}
    )
    billing.cancel_subscription = AsyncMock(side_effect=cancel_error)
    return billing


def _request(**overrides):
    fields = {
        "request_id": "req-1",
        "owner_id": "owner-1",
        "owner_email": "owner@example.com",
        "owner_name": "Olive",
        "listing_id": "listing-1",
        "listing_name": "Olive's Deli",
        "current_plan_id": "pro",
        "target_plan_id": "free",
        "target_plan_name": "Free",
        "status": DowngradeRequestStatus.PENDING,
    }
    fields.update(overrides)
    return DowngradeRequest(**fields)


def _store(request=None, mode=DowngradeDecisionMode.AUTO):
    store = MagicMock()
    store.get_downgrade_request_by_id = AsyncMock(return_value=request)

    async def decide(request_id, status, decider_id, decider_name=None):
        return request.model_copy(update={
            "status": DowngradeRequestStatus(status),
            "decided_by_id": decider_id,
            "decided_by_name": decider_name,
            "decided_at": datetime.now(timezone.utc),
        })

    store.decide_downgrade_request = AsyncMock(side_effect=decide)
    store.get_decision_mode = AsyncMock(return_value=mode)
    store.create_or_update_pending_request = AsyncMock(side_effect=lambda *a, **kw: _request(
        target_plan_id=a[3], target_plan_name=kw.get("target_plan_name")
    ))
    return store


def _plans_db(listing, plans=(FREE, STARTER, PRO)):
    by_id = {p["plan_id"]: p for p in plans}
    pricing_plans = make_collection()
    pricing_plans.find_one = AsyncMock(side_effect=lambda query, projection=None: by_id.get(query["plan_id"]))
    return make_db(listings=make_collection(find_one=listing), pricing_plans=pricing_plans)


@pytest.fixture(autouse=True)
def no_audit():
    with patch("services.downgrade_service.create_audit_log", new_callable=AsyncMock) as audit, \
            patch("services.downgrade_service.record_plan_change", new_callable=AsyncMock), \
            patch("services.downgrade_service.record_request_decision", new_callable=AsyncMock):
        yield audit


class TestSubscriptionSelection:

    @pytest.mark.asyncio
    async def test_listing_tagged_sessions_win(self):
        billing = _billing([
            _session("sub_listing", listing_id="listing-1", plan_id="pro"),
            _session("sub_other_plan", plan_id="pro"),
        ])
        orchestrator = DowngradeOrchestrator(MagicMock(), billing, db_provider=make_db)
        ids = await orchestrator.find_subscription_ids("owner-1", None, "listing-1", "pro")
        assert ids == ["sub_listing"]

    @pytest.mark.asyncio
    async def test_falls_back_to_current_plan_sessions(self):
        billing = _billing([_session("sub_a", plan_id="pro"), _session("sub_a", plan_id="pro"),
                            _session("sub_b", plan_id="gold")])
        orchestrator = DowngradeOrchestrator(MagicMock(), billing, db_provider=make_db)
        assert await orchestrator.find_subscription_ids("owner-1", None, "listing-1", "pro") == ["sub_a"]

    @pytest.mark.asyncio
    async def test_no_current_plan_means_no_plan_fallback(self):
        billing = _billing([_session("sub_a", plan_id="pro")])
        orchestrator = DowngradeOrchestrator(MagicMock(), billing, db_provider=make_db)
        assert await orchestrator.find_subscription_ids("owner-1", None, "listing-1", None) == []


class TestExecutePlanDowngrade:

    @pytest.mark.asyncio
    async def test_cancels_active_and_moves_plan(self):
        billing = _billing(
            [_session("sub_live", listing_id="listing-1"), _session("sub_dead", listing_id="listing-1")],
            statuses={"sub_dead": "canceled"},
        )
        db = make_db()
        orchestrator = DowngradeOrchestrator(MagicMock(), billing, db_provider=lambda: db)

        result = await orchestrator.execute_plan_downgrade("owner-1", None, "listing-1", "pro", "free")

        assert result.cancelled_subscription_ids == ["sub_live"]
        billing.cancel_subscription.assert_awaited_once_with("sub_live")
        query, update = db.listings.update_one.call_args[0]
        assert query == {"listing_id": "listing-1"}
        assert update["$set"]["plan_id"] == "free"

    @pytest.mark.asyncio
    async def test_stripe_failure_aborts_before_plan_update(self):
        billing = _billing(
            [_session("sub_live", listing_id="listing-1")],
            cancel_error=BillingUpstreamError("Failed to cancel subscription: boom"),
        )
        db = make_db()
        orchestrator = DowngradeOrchestrator(MagicMock(), billing, db_provider=lambda: db)

        with pytest.raises(BillingUpstreamError):
            await orchestrator.execute_plan_downgrade("owner-1", None, "listing-1", "pro", "free")
        db.listings.update_one.assert_not_called()


class TestDecide:

    @pytest.mark.asyncio
    async def test_approve_cancels_only_live_subscription(self):
        """Paid listing with two subscriptions, one already canceled."""
        request = _request()
        store = _store(request)
        billing = _billing(
            [_session("sub_live", listing_id="listing-1"), _session("sub_dead", listing_id="listing-1")],
            statuses={"sub_dead": "canceled"},
        )
        mailer = MagicMock(send_email=AsyncMock())
        db = _plans_db({"listing_id": "listing-1", "owner_id": "owner-1", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(store, billing, mailer, db_provider=lambda: db)

        outcome = await orchestrator.decide("req-1", "approve", "admin-1", "Ada")

        assert outcome.executed is True
        assert outcome.cancelled_subscription_ids == ["sub_live"]
        billing.cancel_subscription.assert_awaited_once_with("sub_live")
        assert db.listings.update_one.call_args[0][1]["$set"]["plan_id"] == "free"
        assert outcome.request.status == DowngradeRequestStatus.APPROVED
        assert outcome.request.decided_by_id == "admin-1"
        assert outcome.request.decided_by_name == "Ada"
        assert mailer.send_email.call_args[0][1] == EmailTemplateAlias.DOWNGRADE_APPROVED

    @pytest.mark.asyncio
    async def test_second_decision_conflicts(self):
        store = _store(_request(status=DowngradeRequestStatus.APPROVED))
        orchestrator = DowngradeOrchestrator(store, _billing(), db_provider=make_db)
        with pytest.raises(ConflictError):
            await orchestrator.decide("req-1", "reject", "admin-1")
        store.decide_downgrade_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_request(self):
        orchestrator = DowngradeOrchestrator(_store(None), _billing(), db_provider=make_db)
        with pytest.raises(NotFoundError):
            await orchestrator.decide("missing", "approve", "admin-1")

    @pytest.mark.asyncio
    async def test_invalid_decision(self):
        orchestrator = DowngradeOrchestrator(_store(_request()), _billing(), db_provider=make_db)
        with pytest.raises(PolicyValidationError):
            await orchestrator.decide("req-1", "maybe", "admin-1")

    @pytest.mark.asyncio
    async def test_reject_touches_no_billing(self):
        store = _store(_request())
        billing = _billing([_session("sub_live", listing_id="listing-1")])
        db = make_db()
        orchestrator = DowngradeOrchestrator(store, billing, db_provider=lambda: db)

        outcome = await orchestrator.decide("req-1", "reject", "admin-1")

        assert outcome.request.status == DowngradeRequestStatus.REJECTED
        assert outcome.executed is False
        billing.list_owned_subscription_sessions.assert_not_called()
        db.listings.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_approve_paid_target_conflicts(self):
        store = _store(_request(target_plan_id="pro"))
        db = _plans_db({"listing_id": "listing-1", "owner_id": "owner-1", "plan_id": "gold"})
        orchestrator = DowngradeOrchestrator(store, _billing(), db_provider=lambda: db)
        with pytest.raises(ConflictError):
            await orchestrator.decide("req-1", "approve", "admin-1")
        store.decide_downgrade_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_approve_when_listing_changed_owner_conflicts(self):
        store = _store(_request())
        db = _plans_db({"listing_id": "listing-1", "owner_id": "someone-else", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(store, _billing(), db_provider=lambda: db)
        with pytest.raises(ConflictError):
            await orchestrator.decide("req-1", "approve", "admin-1")

    @pytest.mark.asyncio
    async def test_approve_looks_up_listing_by_id_only(self):
        store = _store(_request())
        db = _plans_db({"listing_id": "listing-1", "owner_id": "owner-1", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(store, _billing(), db_provider=lambda: db)

        await orchestrator.decide("req-1", "approve", "admin-1")

        assert db.listings.find_one.call_args[0][0] == {"listing_id": "listing-1"}

    @pytest.mark.asyncio
    async def test_approve_inactive_target_conflicts(self):
        store = _store(_request())
        db = _plans_db({"listing_id": "listing-1", "owner_id": "owner-1", "plan_id": "pro"},
                       plans=({**FREE, "active": False}, PRO))
        orchestrator = DowngradeOrchestrator(store, _billing(), db_provider=lambda: db)
        with pytest.raises(ConflictError):
            await orchestrator.decide("req-1", "approve", "admin-1")

    @pytest.mark.asyncio
    async def test_approve_already_on_target_skips_execution(self):
        store = _store(_request())
        billing = _billing()
        db = _plans_db({"listing_id": "listing-1", "owner_id": "owner-1", "plan_id": "free"})
        orchestrator = DowngradeOrchestrator(store, billing, db_provider=lambda: db)

        outcome = await orchestrator.decide("req-1", "approve", "admin-1")

        assert outcome.executed is False
        assert outcome.request.status == DowngradeRequestStatus.APPROVED
        billing.list_owned_subscription_sessions.assert_not_called()

    @pytest.mark.asyncio
    async def test_email_failure_does_not_fail_decision(self):
        store = _store(_request())
        mailer = MagicMock(send_email=AsyncMock(side_effect=RuntimeError("smtp down")))
        orchestrator = DowngradeOrchestrator(store, _billing(), mailer, db_provider=make_db)
        outcome = await orchestrator.decide("req-1", "reject", "admin-1")
        assert outcome.request.status == DowngradeRequestStatus.REJECTED


class TestRequestDowngrade:

    @pytest.mark.asyncio
    async def test_auto_mode_executes_cheaper_paid_plan(self):
        store = _store(mode=DowngradeDecisionMode.AUTO)
        billing = _billing([_session("sub_live", listing_id="listing-1")])
        db = _plans_db({"listing_id": "listing-1", "name": "Deli", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(store, billing, db_provider=lambda: db)

        outcome = await orchestrator.request_downgrade("owner-1", "owner@example.com", "listing-1", "starter")

        assert outcome.requires_admin_approval is False
        assert outcome.result.target_plan_id == "starter"
        assert outcome.result.cancelled_subscription_ids == ["sub_live"]
        assert db.listings.update_one.call_args[0][1]["$set"]["plan_id"] == "starter"
        store.create_or_update_pending_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_listing_lookup_is_scoped_to_owner(self):
        db = _plans_db({"listing_id": "listing-1", "name": "Deli", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(_store(), _billing(), db_provider=lambda: db)

        await orchestrator.request_downgrade("owner-1", None, "listing-1", "starter")

        assert db.listings.find_one.call_args[0][0] == {"listing_id": "listing-1", "owner_id": "owner-1"}

    @pytest.mark.asyncio
    async def test_listing_of_another_owner_not_found(self):
        listing = {"listing_id": "listing-1", "owner_id": "owner-2", "plan_id": "pro"}
        listings = make_collection()
        listings.find_one = AsyncMock(
            side_effect=lambda query, projection=None: listing if query.get("owner_id") == listing["owner_id"] else None
        )
        db = make_db(listings=listings, pricing_plans=_plans_db(None).pricing_plans)
        orchestrator = DowngradeOrchestrator(_store(), _billing(), db_provider=lambda: db)

        with pytest.raises(NotFoundError):
            await orchestrator.request_downgrade("owner-1", None, "listing-1", "starter")
        db.listings.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_admin_approval_mode_files_request(self):
        store = _store(mode=DowngradeDecisionMode.ADMIN_APPROVAL)
        billing = _billing([_session("sub_live", listing_id="listing-1")])
        mailer = MagicMock(send_email=AsyncMock())
        db = _plans_db({"listing_id": "listing-1", "name": "Deli", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(store, billing, mailer, db_provider=lambda: db)

        outcome = await orchestrator.request_downgrade(
            "owner-1", "owner@example.com", "listing-1", "starter", owner_name="Olive"
        )

        assert outcome.requires_admin_approval is True
        assert outcome.request.target_plan_id == "starter"
        kwargs = store.create_or_update_pending_request.call_args.kwargs
        assert kwargs["current_plan_name"] == "Pro"
        assert kwargs["target_plan_name"] == "Starter"
        assert kwargs["listing_name"] == "Deli"
        billing.cancel_subscription.assert_not_called()
        db.listings.update_one.assert_not_called()
        assert mailer.send_email.call_args[0][1] == EmailTemplateAlias.DOWNGRADE_REQUESTED

    @pytest.mark.asyncio
    async def test_free_target_rejected(self):
        billing = _billing([_session("sub_live", listing_id="listing-1")])
        db = _plans_db({"listing_id": "listing-1", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(_store(), billing, db_provider=lambda: db)

        with pytest.raises(ConflictError, match="free plan is not allowed"):
            await orchestrator.request_downgrade("owner-1", None, "listing-1", "free")
        billing.cancel_subscription.assert_not_called()
        db.listings.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_pricier_target_is_not_a_downgrade(self):
        db = _plans_db({"listing_id": "listing-1", "plan_id": "starter"})
        orchestrator = DowngradeOrchestrator(_store(), _billing(), db_provider=lambda: db)
        with pytest.raises(ConflictError, match="cheaper plan"):
            await orchestrator.request_downgrade("owner-1", None, "listing-1", "pro")

    @pytest.mark.asyncio
    async def test_listing_without_plan_cannot_downgrade(self):
        db = _plans_db({"listing_id": "listing-1", "plan_id": None})
        orchestrator = DowngradeOrchestrator(_store(), _billing(), db_provider=lambda: db)
        with pytest.raises(ConflictError):
            await orchestrator.request_downgrade("owner-1", None, "listing-1", "starter")

    @pytest.mark.asyncio
    async def test_same_plan_rejected(self):
        db = _plans_db({"listing_id": "listing-1", "plan_id": "starter"})
        orchestrator = DowngradeOrchestrator(_store(), _billing(), db_provider=lambda: db)
        with pytest.raises(ConflictError, match="already on the selected plan"):
            await orchestrator.request_downgrade("owner-1", None, "listing-1", "starter")

    @pytest.mark.asyncio
    async def test_unknown_listing_or_plan(self):
        orchestrator = DowngradeOrchestrator(_store(), _billing(), db_provider=lambda: _plans_db(None))
        with pytest.raises(NotFoundError):
            await orchestrator.request_downgrade("owner-1", None, "missing", "starter")

        db = _plans_db({"listing_id": "listing-1", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(_store(), _billing(), db_provider=lambda: db)
        with pytest.raises(NotFoundError):
            await orchestrator.request_downgrade("owner-1", None, "listing-1", "nonexistent")

    @pytest.mark.asyncio
    async def test_request_filed_for_paid_target_is_refused_at_approval(self):
        store = _store(_request(target_plan_id="starter", target_plan_name="Starter"))
        db = _plans_db({"listing_id": "listing-1", "owner_id": "owner-1", "plan_id": "pro"})
        orchestrator = DowngradeOrchestrator(store, _billing(), db_provider=lambda: db)
        with pytest.raises(ConflictError):
            await orchestrator.decide("req-1", "approve", "admin-1")
        db.listings.update_one.assert_not_called()
