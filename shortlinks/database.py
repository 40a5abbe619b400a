"""Declarative base, column types and schema bootstrap for the store.

The engine itself is owned by :class:`shortlinks.connector.StoreConnector`;
this module only holds what every engine needs.

How to Use
===========
**Step 1 — Declare models**::
    class ShortLink(Base):
        __tablename__ = "short_links"
        created_at: Mapped[datetime] = mapped_column(UTCDateTime(), ...)

**Step 2 — Create tables once connected**::
    connector = StoreConnector(url, on_connect=init_schema)

Key Behaviours
===============
- UTCDateTime always hands back timezone-aware UTC datetimes, also on
  dialects without native timezone support (SQLite in tests).
- init_schema() is idempotent; existing tables are left alone.

Classes:
    Base:  SQLAlchemy declarative base for all models.
    UTCDateTime:  Timezone-normalizing DateTime column type.

Functions:
    utcnow():  Current time as an aware UTC datetime.
    init_schema():  Creates all tables on an engine.
"""

import datetime

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

__all__ = ["Base", "UTCDateTime", "init_schema", "utcnow"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime stored as UTC and always returned timezone-aware."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        value = value.astimezone(datetime.timezone.utc)
        if dialect.name == "sqlite":
            # SQLite compares datetimes as text, so keep a single naive UTC format
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.timezone.utc)
        return value.astimezone(datetime.timezone.utc)


class Base(DeclarativeBase):
    pass


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
