"""Key-value entry backing the offline cache."""

from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from carecue.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheEntry(Base):
    """One keyed JSON blob.

    Values are always written whole; there is no partial-record update format.
    """

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<CacheEntry(key='{self.key}', updated_at={self.updated_at})>"
