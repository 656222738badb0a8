"""
Database Package - SQLAlchemy key/value persistence
===================================================

Whole-collection storage for the matter and template lists.
"""

from .models import Base, StoredDocument
from .session import create_engine_for_url, init_db, session_scope

__all__ = [
    "Base",
    "StoredDocument",
    "create_engine_for_url",
    "init_db",
    "session_scope",
]
