"""Pydantic schemas for request/response validation in the short-link API.

Schema Hierarchy
=================
::
    LinkCreate (Input)
    ├─ originalUrl: str
    ├─ customCode: str | None
    └─ expiresIn: int | None (days)

    LinkUpdate (Input)
    ├─ originalUrl: str | None
    └─ expiresIn: int | None (days)

    LinkCreated (Output, 201)
    ├─ shortCode, shortUrl, originalUrl
    └─ expiresAt: datetime | None

    LinkOut (Output)
    ├─ shortCode, shortUrl, originalUrl, clicks
    ├─ createdAt, updatedAt, expiresAt
    └─ ownerId

    LinkPage (Output)
    ├─ items: list[LinkOut]
    └─ total, page, pages

Key Behaviours
===============
- JSON uses camelCase; Python attributes stay snake_case.
- Schemas only check shape and types. URL, code and expiry policy lives in
  the allocator so direct callers get the same validation as HTTP callers.
- bool is rejected for expiresIn even though it is an int subclass.
"""

import datetime
import math

from pydantic import BaseModel, ConfigDict, Field, StrictInt
from pydantic.alias_generators import to_camel

from shortlinks.enums import ConnectionState, HealthStatus
from shortlinks.models import ShortLink

__all__ = [
    "LinkCreate",
    "LinkUpdate",
    "LinkCreated",
    "LinkOut",
    "LinkPage",
    "MessageResponse",
    "ErrorResponse",
    "HealthResponse",
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LinkCreate(CamelModel):
    original_url: str = Field(..., min_length=1)
    custom_code: str | None = None
    expires_in: StrictInt | None = Field(None, description="Days until the link expires")


class LinkUpdate(CamelModel):
    original_url: str | None = Field(None, min_length=1)
    expires_in: StrictInt | None = Field(None, description="Days from now until the link expires")


class LinkCreated(CamelModel):
    short_code: str
    short_url: str
    original_url: str
    expires_at: datetime.datetime | None = None

    @classmethod
    def from_model(cls, link: ShortLink, base_url: str) -> "LinkCreated":
        return cls(
            short_code=link.code,
            short_url=build_short_url(base_url, link.code),
            original_url=link.target_url,
            expires_at=link.expires_at,
        )


class LinkOut(CamelModel):
    short_code: str
    short_url: str
    original_url: str
    clicks: int
    created_at: datetime.datetime
    updated_at: datetime.datetime
    expires_at: datetime.datetime | None = None
    owner_id: str | None = None

    @classmethod
    def from_model(cls, link: ShortLink, base_url: str) -> "LinkOut":
        return cls(
            short_code=link.code,
            short_url=build_short_url(base_url, link.code),
            original_url=link.target_url,
            clicks=link.clicks,
            created_at=link.created_at,
            updated_at=link.updated_at,
            expires_at=link.expires_at,
            owner_id=link.owner_id,
        )


class LinkPage(CamelModel):
    items: list[LinkOut]
    total: int
    page: int
    pages: int

    @classmethod
    def build(cls, links: list[ShortLink], total: int, page: int, limit: int, base_url: str) -> "LinkPage":
        return cls(
            items=[LinkOut.from_model(link, base_url) for link in links],
            total=total,
            page=page,
            pages=math.ceil(total / limit) if limit else 0,
        )


class MessageResponse(BaseModel):
    status: str = "success"
    message: str


class ErrorResponse(BaseModel):
    status: str = "error"
    code: str
    message: str
    retryable: bool = False


class HealthResponse(BaseModel):
    status: HealthStatus
    store: ConnectionState


def build_short_url(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/{code}"
