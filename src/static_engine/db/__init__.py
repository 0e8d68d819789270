"""Persistence layer."""

from .database import Database, DatabaseError

__all__ = ["Database", "DatabaseError"]
