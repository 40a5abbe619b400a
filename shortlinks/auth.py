"""Bearer-token authentication collaborator.

Turns an optional ``Authorization: Bearer <jwt>`` header into an owner id.
A missing header means an anonymous caller; a header that fails verification
is rejected rather than silently downgraded to anonymous.
"""

import jwt

from shortlinks.config import Settings
from shortlinks.exceptions import UnauthorizedError

__all__ = ["decode_owner_id", "issue_token"]


def decode_owner_id(token: str, settings: Settings) -> str:
    """Verify ``token`` and return its subject.

    The subject is read from ``sub``, falling back to ``userId``.

    Raises:
        UnauthorizedError: Expired, malformed or badly signed tokens, or
            tokens without a subject.
    """
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise UnauthorizedError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise UnauthorizedError("Invalid token") from exc

    owner_id = claims.get("sub") or claims.get("userId")
    if not owner_id:
        raise UnauthorizedError("Token has no subject")
    return str(owner_id)


def issue_token(owner_id: str, settings: Settings, **claims: object) -> str:
    """Sign a token for ``owner_id``; used by tooling and tests."""
    return jwt.encode({"sub": owner_id, **claims}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
