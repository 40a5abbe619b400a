"""Bearer token verification tests."""

import time

import jwt
import pytest

from shortlinks.auth import decode_owner_id, issue_token
from shortlinks.config import Settings
from shortlinks.exceptions import UnauthorizedError


def test_round_trip(settings: Settings) -> None:
    assert decode_owner_id(issue_token("alice", settings), settings) == "alice"


def test_user_id_claim_fallback(settings: Settings) -> None:
    token = jwt.encode({"userId": "42"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    assert decode_owner_id(token, settings) == "42"


def test_expired_token(settings: Settings) -> None:
    token = issue_token("alice", settings, exp=int(time.time()) - 60)
    with pytest.raises(UnauthorizedError, match="expired"):
        decode_owner_id(token, settings)


def test_wrong_secret(settings: Settings) -> None:
    token = jwt.encode({"sub": "alice"}, "another-secret-key-for-hs256-signing-02", algorithm="HS256")
    with pytest.raises(UnauthorizedError, match="Invalid token"):
        decode_owner_id(token, settings)


def test_token_without_subject(settings: Settings) -> None:
    token = jwt.encode({"role": "admin"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(UnauthorizedError, match="no subject"):
        decode_owner_id(token, settings)
