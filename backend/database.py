"""
Database connection and configuration

Fails fast with clear error messages if required variables are missing.
The client is created on first use so importing this module needs no
running database.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

_client = None


def validate_required_env_vars():
    """
    Validate all critical environment variables exist before connecting.
    Raises ValueError with clear error message if required variables are missing.
    """
    required_vars = {
        "MONGO_URL": "MongoDB connection string (e.g., mongodb://localhost:27017)",
        "DB_NAME": "Database name (e.g., nail_credits)"
    }

    missing = []
    for var, description in required_vars.items():
        if not os.environ.get(var):
            missing.append(f"  - {var}: {description}")

    if missing:
        error_msg = (
            "\n" + "=" * 60 + "\n"
            "CRITICAL: Missing required environment variables!\n"
            "=" * 60 + "\n"
            "The following environment variables must be set:\n\n"
            + "\n".join(missing) + "\n\n"
            "Please check your .env file or environment configuration.\n"
            + "=" * 60
        )
        raise ValueError(error_msg)


def get_client() -> AsyncIOMotorClient:
    """Shared Motor client with connection pool configuration."""
    global _client
    if _client is None:
        validate_required_env_vars()
        try:
            _client = AsyncIOMotorClient(
                os.environ['MONGO_URL'],
                maxPoolSize=50,
                minPoolSize=5,
                connectTimeoutMS=5000,
                serverSelectionTimeoutMS=5000,
                retryWrites=True
            )
        except Exception as e:
            raise ValueError(f"Failed to create MongoDB client: {e}")
    return _client


def get_db():
    """FastAPI dependency and plain accessor for the application database."""
    return get_client()[os.environ['DB_NAME']]


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None


async def check_db_connection():
    """
    Test database connection health.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    try:
        client = get_client()
        await client.admin.command('ping')
        await get_db().list_collection_names()

        logger.info(f"Database connected successfully: {os.environ['DB_NAME']}")
        return True, None

    except Exception as e:
        error_msg = f"Database connection failed: {e}"
        logger.error(error_msg)
        return False, error_msg
