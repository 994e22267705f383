"""
SQLAlchemy model for the daily remote-inpainting quota.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from retouch.database import Base


class QuotaRecord(Base):
    """
    Persisted usage counter.

    One row per quota key; ``date`` is the calendar day (YYYY-MM-DD) the
    count belongs to.
    """
    __tablename__ = "remote_quota"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {"key": self.key, "count": self.count, "date": self.date}

    def __repr__(self) -> str:
        return f"<QuotaRecord(key={self.key}, count={self.count}, date={self.date})>"
