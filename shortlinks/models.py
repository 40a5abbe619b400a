"""SQLAlchemy ORM models for the short-link service.

Data Model Layout
=================
::
    short_links table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ code (VARCHAR(20) UNIQUE, INDEXED)
    ├─ target_url (TEXT NOT NULL)
    ├─ clicks (INTEGER DEFAULT 0)
    ├─ created_at (TIMESTAMPTZ NOT NULL)
    ├─ updated_at (TIMESTAMPTZ NOT NULL)
    ├─ expires_at (TIMESTAMPTZ NULL, INDEXED)
    └─ owner_id (VARCHAR(64) NULL, INDEXED with created_at)

How to Use
===========
**Step 1 — Import**::
    from shortlinks.models import ShortLink

**Step 2 — Query live links**::
    stmt = select(ShortLink).where(ShortLink.code == "abc123", ShortLink.live_at(now))

Key Behaviours
===============
- The unique index on code is the only uniqueness authority; the allocator
  never pre-checks before inserting.
- clicks only moves through an atomic UPDATE clicks = clicks + 1.
- A record whose expires_at has passed is treated as absent by every read,
  even before the sweeper deletes it.

Classes:
    ShortLink:  One short code to target URL mapping with click accounting.
"""

import datetime

from sqlalchemy import ColumnElement, Index, Integer, String, Text, or_
from sqlalchemy.orm import Mapped, mapped_column

from shortlinks.database import Base, UTCDateTime, utcnow

__all__ = ["ShortLink"]


class ShortLink(Base):
    __tablename__ = "short_links"
    __table_args__ = (Index("ix_short_links_owner_created", "owner_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime(), index=True, nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    @classmethod
    def live_at(cls, now: datetime.datetime) -> ColumnElement[bool]:
        """SQL predicate matching records that have not expired at ``now``."""
        return or_(cls.expires_at.is_(None), cls.expires_at > now)

    def __repr__(self) -> str:
        return f"<ShortLink(id={self.id}, code='{self.code}', clicks={self.clicks})>"
