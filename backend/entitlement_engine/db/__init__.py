"""Database package"""

from entitlement_engine.db.session import AsyncSessionLocal, engine, get_db, get_session_factory
from entitlement_engine.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine", "get_db", "get_session_factory"]
