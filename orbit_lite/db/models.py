"""
SQLAlchemy Models for the Metadata Store
========================================

Key/value table holding whole serialized collections:
- orbit_matters_v1    - JSON array of matters
- orbit_templates_v1  - JSON array of templates
- orbit_preferences_v1 - JSON object of UI preferences (not core)

Supports SQLite (default, local-first) and any SQLAlchemy URL.
"""

from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class StoredDocument(Base):
    """One serialized collection under a dedicated key"""
    __tablename__ = "documents"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)  # JSON text
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
