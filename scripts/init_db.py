import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine
from models.base import Base
# Import all models to ensure they are registered
from models.enum_catalog import EnumCatalogEntry  # noqa: F401
from models.master_record import MasterRecord  # noqa: F401
from models.summary_record import SummaryRecord  # noqa: F401
from models.sync_log import SyncLog  # noqa: F401

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

async def init_database():
    logger.info("Connecting to database...")
    engine = build_engine(settings.DATABASE_URL, echo=True)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        # Create all tables defined in models
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
