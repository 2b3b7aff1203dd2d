"""
Base models and mixins for SQLAlchemy ORM.

Provides the declarative base, mixins for UUID keys, timestamps and
soft-delete markers, and the serialization helper shared by all entities.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional
import uuid

from sqlalchemy import Column, String
from sqlalchemy.orm import declarative_base


# SQLAlchemy declarative base for all ORM models
Base = declarative_base()


def utc_now_iso() -> str:
    """
    Get current UTC timestamp in ISO format.

    Returns:
        ISO format timestamp string (e.g., "2025-01-15T10:30:45.123456+00:00")
    """
    return datetime.now(timezone.utc).isoformat()


class UUIDMixin:
    """
    Mixin that adds a UUID primary key column.

    UUIDs are stored as strings so the same schema works on SQLite and
    PostgreSQL.

    Attributes:
        id: UUID primary key as TEXT
    """

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        doc="UUID primary key"
    )


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamp columns.

    Timestamps are UTC ISO strings set from application code.

    Attributes:
        created_at: Timestamp when record was created (immutable)
        updated_at: Timestamp when record was last updated (auto-updated)
    """

    created_at = Column(
        String,
        nullable=False,
        default=utc_now_iso,
        doc="UTC timestamp when record was created"
    )

    updated_at = Column(
        String,
        nullable=False,
        default=utc_now_iso,
        onupdate=utc_now_iso,
        doc="UTC timestamp when record was last updated"
    )


class SoftDeleteMixin:
    """
    Mixin that adds a nullable deleted_at marker.

    A row whose deleted_at is NULL is live; soft delete stamps the column and
    restore clears it again.
    """

    deleted_at = Column(
        String,
        nullable=True,
        default=None,
        index=True,
        doc="UTC timestamp when record was soft-deleted (NULL if live)"
    )


class ModelMixin:
    """
    Mixin providing common model utilities.

    Adds helper methods for serialization and representation.
    """

    def to_dict(self, only: Optional[Iterable[str]] = None) -> dict[str, Any]:
        """
        Convert model instance to dictionary.

        Args:
            only: Restrict output to these column names (projection)

        Returns:
            Dictionary with column values

        Note:
            Only includes columns, not relationships.
        """
        columns = [column.name for column in self.__table__.columns]
        if only is not None:
            wanted = set(only)
            columns = [name for name in columns if name in wanted]
        return {name: getattr(self, name) for name in columns}

    def __repr__(self) -> str:
        attrs = ", ".join(
            f"{key}={repr(getattr(self, key, None))}"
            for key in ("id", "name", "sku")
            if key in self.__table__.columns
        )
        return f"{self.__class__.__name__}({attrs})"
