"""Public Listing Routes.

- GET /api/listings/{slug} - Approved listing page data with its plan features

The expired listing fallback runs for the slug before the page is read, so
visitors never see features of an expired paid plan.
"""
import logging
from fastapi import APIRouter, HTTPException, status
from database import database
from models import Listing, ListingStatus
from services.listing_entitlements import build_plan_context
from services.listing_reconciler import listing_reconciler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/listings", tags=["public-listings"])


@router.get("/{slug}")
async def get_public_listing(slug: str):
    try:
        await listing_reconciler.reconcile_slug(slug)
    except Exception as e:
        logger.error(f"Expired listing fallback failed for slug {slug}: {e}")

    db = database.get_db()
    listing = await db.listings.find_one(
        {"slug": slug, "status": ListingStatus.APPROVED.value},
        {"_id": 0}
    )
    if not listing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")

    plan = None
    if listing.get("plan_id"):
        plan = await db.pricing_plans.find_one(
            {"plan_id": listing["plan_id"]},
            {"_id": 0, "plan_id": 1, "name": 1, "active": 1, "features": 1, "gallery_limit": 1,
             "billing_period": 1, "duration_days": 1}
        )

    context = build_plan_context(listing["listing_id"], plan)
    return {
        "listing": Listing(**listing).model_dump(mode="json", exclude={"owner_id"}),
        "plan": context.to_dict(),
    }
