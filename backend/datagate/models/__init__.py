"""
SQLAlchemy ORM models for the gateway.

This module exports all database models and the declarative base.
Import models from this module to ensure they're registered with SQLAlchemy.
"""

from datagate.models.base import (
    Base,
    ModelMixin,
    SoftDeleteMixin,
    TimestampMixin,
    UUIDMixin,
)
from datagate.models.catalog import Category, Product, Review

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "SoftDeleteMixin",
    "ModelMixin",
    # Models
    "Category",
    "Product",
    "Review",
]
