import logging
import os
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load variables from a local .env file without overwriting the environment.

    Returns True when a file was found.
    """
    if load_dotenv(override=False):
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
        return True
    logger.debug("No local .env file found")
    return False


def env_or_dotenv(name: str) -> Optional[str]:
    """Read `name` from the environment, falling back to backend/.env.

    WHY: database.py and security.py read their settings at import time,
    before pydantic-settings is involved, so a developer running from a
    checkout with only backend/.env still gets DATABASE_URL and the
    encryption key.
    """
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)
    return value or None
