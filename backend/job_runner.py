"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" (and optionally "count") for admin toast.
"""
import logging

logger = logging.getLogger(__name__)


async def run_expired_listing_fallback():
    try:
        from services.listing_reconciler import listing_reconciler
        count = await listing_reconciler.reconcile_approved_listings()
        logger.info(f"Expired listing fallback job completed: {count} listings moved to fallback plan")
        return {"message": f"Expired listings moved to fallback plan: {count}", "count": count}
    except Exception as e:
        logger.error(f"Expired listing fallback job failed: {e}")
        raise
