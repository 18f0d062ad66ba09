"""
Kindred Ops - Core Package
==========================

Configuration, persistence, models and schemas.
"""

from kindred_ops.core.config import settings
from kindred_ops.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
