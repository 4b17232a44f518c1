"""Database package"""

from scribe.db.session import AsyncSessionLocal, engine, get_db
from scribe.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine", "get_db"]
