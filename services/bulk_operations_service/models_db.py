"""
Database models for the Bulk Operations Service entity store.

Operation and Batch tracking lives in the counter store; the relational
database only holds the entities that batches are applied to.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base: Any = declarative_base()


class Entity(Base):
    """A client-owned record mutated by bulk operations."""

    __tablename__ = "entities"

    id = Column(String(255), primary_key=True)
    data = Column(JSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Entity(id={self.id!r})>"
