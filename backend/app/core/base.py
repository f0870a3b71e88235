"""
SQLAlchemy Base class for all models.

Separated from database.py to allow importing Base
without triggering engine creation (needed for tests and migrations).
"""
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all SQLAlchemy models (stock items, ledger, reservations)."""
    pass
