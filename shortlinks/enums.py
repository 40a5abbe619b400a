"""Shared enums for the short-link service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = ["HealthStatus", "ConnectionState", "RequestStatus", "SortField", "SortOrder"]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ConnectionState(StrEnum):
    """Lifecycle states of the store connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


class SortField(StrEnum):
    """Sortable columns for link listings, keyed by their API names."""

    CREATED_AT = "createdAt"
    CLICKS = "clicks"


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"
