"""
LockBlip Ghost - Core Package
============================

Configuration, persistence, models and schemas.
"""

from lockblip.core.config import settings
from lockblip.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
