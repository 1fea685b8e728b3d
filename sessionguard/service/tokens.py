"""HS256 bearer tokens binding a user to one session.

Claims: ``iss``, ``aud``, ``sub`` (user id), ``sid`` (session id), ``iat``,
``exp``. A token is only a carrier; whether its session is still live is
decided by the session engine on every request.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sessionguard.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    session_id: Optional[str]
    expires_at: datetime


class TokenCodec:
    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "sessionguard",
        audience: str = "sessionguard-clients",
        leeway: timedelta = timedelta(seconds=0),
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._leeway = leeway

    def issue(self, user_id: str, session_id: str, expires_at: datetime) -> str:
        now = int(time.time())
        return self._encode(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": user_id,
                "sid": session_id,
                "iat": now,
                "exp": int(expires_at.timestamp()),
            }
        )

    def verify(self, token: str) -> Optional[TokenClaims]:
        payload = self._decode(token)
        if payload is None:
            return None
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            return None
        sid = payload.get("sid")
        return TokenClaims(
            user_id=sub,
            session_id=sid if isinstance(sid, str) and sid else None,
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256; anything else is an algorithm-confusion attempt
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._leeway.total_seconds():
            return None
        return payload


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)
