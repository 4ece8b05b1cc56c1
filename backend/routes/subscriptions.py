"""Owner Billing Subscription Routes.

Endpoints:
- GET /api/billing/subscriptions/my - Owner's plan subscriptions from Stripe
- POST /api/billing/subscriptions/cancel - Cancel at period end

Stripe is the billing authority; these routes only read subscription state
and flag cancel_at_period_end.
"""
import logging
from fastapi import APIRouter, Request, Depends
from pydantic import BaseModel, Field
from middleware import owner_route_guard
from services.subscription_service import subscription_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing/subscriptions", tags=["billing"], dependencies=[Depends(owner_route_guard)])


class CancelSubscriptionBody(BaseModel):
    subscription_id: str = Field(min_length=1)


@router.get("/my")
async def get_my_subscriptions(request: Request):
    user = await owner_route_guard(request)
    rows = await subscription_service.list_owner_subscriptions(user["user_id"], user.get("email"))
    return {"subscriptions": rows}


@router.post("/cancel")
async def cancel_subscription(request: Request, body: CancelSubscriptionBody):
    user = await owner_route_guard(request)
    result = await subscription_service.schedule_cancellation(body.subscription_id.strip(), user)
    logger.info(f"Subscription cancel request by {user['user_id']}: {result['message']}")
    return result
