import logging
from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

from journey_engine.config import MONGO_URI, DB_NAME
from journey_engine.models.journey import JourneyDefinition
from journey_engine.models.journey_step import JourneyStep
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.step_execution import JourneyStepExecution
from journey_engine.models.contact import Contact
from journey_engine.models.activity import Activity

logger = logging.getLogger(__name__)

DOCUMENT_MODELS = [
    JourneyDefinition,
    JourneyStep,
    JourneyEnrollment,
    JourneyStepExecution,
    Contact,
    Activity,
]

_client = None


async def init_models(database):
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    logger.info(f"Beanie initialized on database '{database.name}'")


async def init_db():
    global _client
    try:
        logger.info("Initializing database connection...")
        client = AsyncIOMotorClient(MONGO_URI)

        # Test the connection
        await client.admin.command('ping')
        logger.info("MongoDB connection test successful.")

        await init_models(client[DB_NAME])
        _client = client
        logger.info("MongoDB connection established and Beanie initialized.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


def get_database():
    if _client is None:
        raise RuntimeError("Database not initialized; call init_db() first")
    return _client[DB_NAME]
