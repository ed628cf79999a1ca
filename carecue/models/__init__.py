"""SQLAlchemy ORM models."""

from carecue.models.cache_entry import CacheEntry

__all__ = [
    "CacheEntry",
]
