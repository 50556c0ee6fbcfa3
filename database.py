"""
MongoDB connection for the Chat App

The realtime tree is persisted in MongoDB: every tree root (chatRooms, messages,
typing, notifications, presence) is one collection. The connection is an
explicit object owned by the application lifespan instead of a module global.
"""
import logging
import os
from typing import Optional

from pymongo import MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "mongodb://localhost:27017"
DEFAULT_DATABASE_NAME = "chat_app"


class Connection:
    """Opens and closes the MongoDB client used by the realtime store."""

    def __init__(self, url: Optional[str] = None, name: Optional[str] = None):
        self.url = url or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
        self.name = name or os.getenv("DATABASE_NAME") or DEFAULT_DATABASE_NAME
        self.client: Optional[MongoClient] = None

    @property
    def db(self) -> Database:
        if self.client is None:
            raise RuntimeError("Database connection is not open")
        return self.client[self.name]

    def open(self) -> Database:
        if self.client is None:
            self.client = MongoClient(self.url, serverSelectionTimeoutMS=5000)
            logger.info("Connected to MongoDB database %s", self.name)
        return self.db

    def close(self):
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("Closed MongoDB connection")


def describe(db: Optional[Database]) -> dict:
    """Connection diagnostics for the /test endpoint."""
    response = {
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    response["database"] = "✅ Available"
    response["database_name"] = db.name if hasattr(db, "name") else "✅ Connected"
    response["connection_status"] = "Connected"
    try:
        collections = db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response
