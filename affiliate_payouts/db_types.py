"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric, Uuid

# Use JSON instead of JSONB for cross-database compatibility
# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# UUID type that works with both databases
UUIDType = Uuid


def Money() -> Numeric:
    """Monetary amount column type (two decimal places)."""
    return Numeric(12, 2, asdecimal=True)


def Rate() -> Numeric:
    """Exchange/commission rate column type."""
    return Numeric(14, 6, asdecimal=True)
