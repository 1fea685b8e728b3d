import base64
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.service.tokens import TokenCodec


@pytest.fixture
def expires_at():
    return datetime.now(timezone.utc) + timedelta(minutes=10)


def _forge(token: str, **claims) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    data = json.loads(base64.urlsafe_b64decode(padded))
    data.update(claims)
    forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{sig}"


def test_round_trip(codec, expires_at):
    token = codec.issue("user-1", "sess-1", expires_at)

    claims = codec.verify(token)

    assert claims.user_id == "user-1"
    assert claims.session_id == "sess-1"
    assert claims.expires_at == expires_at.replace(microsecond=0)


def test_unbound_token_has_no_session(codec, unbound_token):
    claims = codec.verify(unbound_token("user-1", timedelta(minutes=1)))

    assert claims.user_id == "user-1"
    assert claims.session_id is None


def test_tampered_payload_is_rejected(codec, expires_at):
    token = codec.issue("user-1", "sess-1", expires_at)

    assert codec.verify(_forge(token, sub="admin")) is None


def test_other_secret_issuer_or_audience_is_rejected(codec, expires_at):
    token = codec.issue("user-1", "sess-1", expires_at)

    assert TokenCodec("another-secret").verify(token) is None
    assert TokenCodec("unit-test-secret", issuer="elsewhere").verify(token) is None
    assert TokenCodec("unit-test-secret", audience="others").verify(token) is None


def test_expired_token_is_rejected(codec):
    past = datetime.fromtimestamp(time.time() - 5, tz=timezone.utc)

    assert codec.verify(codec.issue("user-1", "sess-1", past)) is None


def test_non_hs256_header_is_rejected(codec, expires_at):
    token = codec.issue("user-1", "sess-1", expires_at)
    _, payload, sig = token.split(".")
    none_header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

    assert codec.verify(f"{none_header}.{payload}.{sig}") is None


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
def test_malformed_tokens_are_rejected(codec, garbage):
    assert codec.verify(garbage) is None


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        TokenCodec("")
