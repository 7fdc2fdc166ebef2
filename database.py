"""
Store session

A Session owns one client connection and resolves collections inside one
database. It is built explicitly, used by the repository, index manager and
aggregation engine, and closed by whoever opened it. Sessions are never
shared or pooled: every open() builds a new client.

    with Session.open("mongodb://localhost:27017", "demo") as session:
        customers = session.collection("customers")
"""

import logging
from contextlib import contextmanager
from typing import Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import Config, mask_uri
from errors import StoreConnectionError, StoreUnavailableError
import memstore

logger = logging.getLogger(__name__)

MONGO_SCHEMES = ("mongodb://", "mongodb+srv://")


class Session:
    def __init__(self, client, db_name: str, uri: str):
        self._client = client
        self._db = client[db_name]
        self.db_name = db_name
        self.uri = uri
        self._closed = False

    @classmethod
    def open(cls, uri: Optional[str], db_name: Optional[str], timeout_ms: int = 5000) -> "Session":
        if not uri or not uri.strip():
            raise StoreConnectionError("Database URL is not configured")
        if not db_name or not db_name.strip():
            raise StoreConnectionError("Database name is not configured")

        client = None
        try:
            if uri.startswith(memstore.SCHEME):
                client = memstore.MemoryClient(uri)
            elif uri.startswith(MONGO_SCHEMES):
                client = MongoClient(uri, serverSelectionTimeoutMS=timeout_ms)
            else:
                raise StoreConnectionError(f"Unsupported database URL scheme: {mask_uri(uri)}")
            # Forces server selection and authentication
            client.admin.command("ping")
        except StoreConnectionError:
            raise
        except (PyMongoError, ValueError) as e:
            if client is not None:
                client.close()
            logger.error(f"Connection to {mask_uri(uri)} failed: {e}")
            raise StoreConnectionError(f"Cannot connect to {mask_uri(uri)}: {e}") from e

        logger.info(f"Connected to {mask_uri(uri)}, database: {db_name}")
        return cls(client, db_name, uri)

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def database(self):
        self.ensure_open()
        return self._db

    def ensure_open(self):
        if self._closed:
            raise StoreUnavailableError("Session is closed")

    def collection(self, name: str):
        """Resolve a collection handle; no round-trip to the server."""
        self.ensure_open()
        return self._db[name]

    def list_collection_names(self):
        self.ensure_open()
        return self._db.list_collection_names()

    def close(self):
        if self._closed:
            logger.debug("Session already closed")
            return
        self._closed = True
        self._client.close()
        logger.info(f"Disconnected from {mask_uri(self.uri)}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


@contextmanager
def open_session(config: Config):
    """Open a session from config and close it on every exit path."""
    session = Session.open(config.DATABASE_URL, config.DATABASE_NAME,
                           timeout_ms=config.SERVER_SELECTION_TIMEOUT_MS)
    try:
        yield session
    finally:
        session.close()
