from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# Collection name -> field holding the record's public id
COLLECTION_ID_FIELDS = {
    "users": "user_id",
    "registrations": "registration_id",
    "inspections": "inspection_id",
    "infringements": "infringement_id",
    "operatorLicenseApplications": "license_application_id",
    "operators": "operator_id",
    "competencyTests": "test_id",
    "checklistTemplates": "template_id",
}


def id_field_for(collection: str) -> str:
    return COLLECTION_ID_FIELDS.get(collection, "id")


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
            await self._seed_checklist_templates()
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
        """Create MongoDB indexes for lookups by id, status and reference."""
        try:
            for collection, id_field in COLLECTION_ID_FIELDS.items():
                await self.db[collection].create_index(id_field, unique=True)

            try:
                await self.db.users.create_index("email", unique=True)
            except Exception:
                pass  # Index may already exist with different options

            await self.db.registrations.create_index("status")
            await self.db.registrations.create_index("expiry_date")
            try:
                await self.db.registrations.create_index("sca_rego_no", unique=True, sparse=True)
            except Exception:
                pass
            await self.db.registrations.create_index("hull_id_number")

            await self.db.inspections.create_index([("status", 1), ("scheduled_date", -1)])
            await self.db.inspections.create_index("inspector_ref.$id")
            await self.db.inspections.create_index("registration_ref.$id")

            await self.db.operatorLicenseApplications.create_index("status")
            await self.db.operatorLicenseApplications.create_index("expiry_date")

            await self.db.infringements.create_index("status")
            await self.db.infringements.create_index("issued_by_ref.$id")
            await self.db.infringements.create_index("payment_due_date")

            await self.db.competencyTests.create_index("license_application_ref.$id")

            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("action")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

    async def _seed_checklist_templates(self):
        """Seed checklistTemplates (idempotent upsert by template_id)."""
        from services.checklist_service import DEFAULT_CHECKLIST_TEMPLATES
        for template in DEFAULT_CHECKLIST_TEMPLATES:
            await self.db.checklistTemplates.update_one(
                {"template_id": template["template_id"]},
                {"$setOnInsert": template},
                upsert=True,
            )
        logger.info("Checklist templates seeded")

# Global database instance
database = Database()
