"""
MongoDB connection for the credit ledger

One motor client per process. MONGO_URL and DB_NAME are required; the app
refuses to import without them. Pool sizes can be tuned per deployment.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REQUIRED_ENV_VARS = {
    "MONGO_URL": "MongoDB connection string (e.g., mongodb://localhost:27017)",
    "DB_NAME": "Database name (e.g., credit_ledger)",
}


def validate_required_env_vars():
    """
    Raises:
        ValueError listing every missing variable
    """
    missing = [f"  - {name}: {hint}" for name, hint in REQUIRED_ENV_VARS.items() if not os.environ.get(name)]
    if missing:
        raise ValueError(
            "Missing required environment variables for the credit ledger:\n" + "\n".join(missing)
        )


def create_client() -> AsyncIOMotorClient:
    # Ledger writes are conditional updates; retryWrites keeps a failover from
    # surfacing as a spurious PoolContention
    return AsyncIOMotorClient(
        os.environ['MONGO_URL'],
        maxPoolSize=int(os.environ.get("MONGO_MAX_POOL_SIZE", "50")),
        minPoolSize=int(os.environ.get("MONGO_MIN_POOL_SIZE", "5")),
        connectTimeoutMS=5000,
        serverSelectionTimeoutMS=5000,
        retryWrites=True,
    )


validate_required_env_vars()

client = create_client()
db = client[os.environ['DB_NAME']]


def get_db():
    """FastAPI dependency returning the ledger database (overridden in tests)."""
    return db


async def check_db_connection():
    """
    Returns:
        Tuple[bool, Optional[str]]: (reachable, error_message)
    """
    try:
        await client.admin.command('ping')
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False, str(e)

    logger.info(f"Database connected: {os.environ['DB_NAME']}")
    return True, None


def close_db_connection():
    client.close()
    logger.info("Database connection closed")
