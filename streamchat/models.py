"""
SQLAlchemy ORM models for the realtime store.

This module contains database table definitions using SQLAlchemy.
For Pydantic message/identity schemas, see schemas.py.
"""

from sqlalchemy import JSON, Column, String

from streamchat.storage import Base


class Record(Base):
    """
    SQLAlchemy model for one keyed record of a realtime stream.

    Table: records
    Primary Key: (path, key) - keys are push keys, never reused
    """
    __tablename__ = "records"

    path = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
