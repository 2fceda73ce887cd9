"""Database-agnostic type definitions for SQLAlchemy models.

Every model in this package runs on both SQLite (tests, local dev) and
PostgreSQL, so dialect-specific types are avoided.
"""
from sqlalchemy import JSON

# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON
