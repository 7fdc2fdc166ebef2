# config.py - Configuration for the customer/city data layer

import os
import logging
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def mask_uri(uri: Optional[str]) -> str:
    """Hide credentials in a connection URI before it reaches the logs."""
    if not uri:
        return "Not configured"
    if '@' in uri:
        scheme, _, rest = uri.partition('://')
        host = rest.split('@', 1)[1]
        return f"{scheme}://***:***@{host[:30]}"
    return uri[:50] + "..." if len(uri) > 50 else uri


class Config:
    """Settings for the store connection, collection names and the HTTP service."""

    def __init__(self, env_file: Optional[str] = None):
        # Real environment variables win over the .env file
        load_dotenv(env_file, override=False)

        self.DATABASE_URL = os.getenv('DATABASE_URL')
        self.DATABASE_NAME = os.getenv('DATABASE_NAME')
        self.CUSTOMERS_COLLECTION = os.getenv('CUSTOMERS_COLLECTION', 'customers')
        self.CITIES_COLLECTION = os.getenv('CITIES_COLLECTION', 'cities')
        self.SERVER_SELECTION_TIMEOUT_MS = int(os.getenv('SERVER_SELECTION_TIMEOUT_MS', '5000'))

        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.PORT = int(os.getenv('PORT', '8000'))

    def log_summary(self):
        logger.info(f"Database URL: {mask_uri(self.DATABASE_URL)}")
        logger.info(f"Database name: {self.DATABASE_NAME}")
        logger.info(f"Collections: {self.CUSTOMERS_COLLECTION}, {self.CITIES_COLLECTION}")
        logger.info(f"Server selection timeout: {self.SERVER_SELECTION_TIMEOUT_MS}ms")


def setup_logging(level: str = 'INFO'):
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
