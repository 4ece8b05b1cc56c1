from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so listing created_at comes back comparable with aware "now"
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for plan, listing and downgrade lookups."""
        try:
            # Pricing plans
            await self.db.pricing_plans.create_index("plan_id", unique=True)
            await self.db.pricing_plans.create_index("active")

            # Listings - owner dashboards, public slug pages, expiry sweep
            await self.db.listings.create_index("listing_id", unique=True)
            try:
                await self.db.listings.create_index("slug", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.listings.create_index([("owner_id", 1), ("plan_id", 1)])
            await self.db.listings.create_index([("status", 1), ("plan_id", 1)])

            # Downgrade requests - admin queue sorted newest first
            await self.db.downgrade_requests.create_index("request_id", unique=True)
            await self.db.downgrade_requests.create_index([("status", 1), ("created_at", -1)])
            await self.db.downgrade_requests.create_index([("owner_id", 1), ("listing_id", 1), ("status", 1)])

            # Policy singleton
            await self.db.policy_settings.create_index("setting_id", unique=True)

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("owner_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1)])

            # Message log indexes
            await self.db.message_logs.create_index([("created_at", -1)])
            await self.db.message_logs.create_index([("owner_id", 1), ("created_at", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

database = Database()
