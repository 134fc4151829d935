"""
Request signing for the downstream accounting API.

The API authenticates each call with a time-scoped HMAC:

    X-AUTH-QUERYTIME: 2026-10-19T08:15:02
    X-AUTH-KEY:       <public key id>:<base64 HMAC-SHA384("<key id>:<timestamp>:<path>")>

The path is signed without its query string. Timestamps are only valid for a
short window, so a change is signed when it is executed, never when captured.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

from ledgergate.core.config import ApiCredentials

QUERYTIME_HEADER = "X-AUTH-QUERYTIME"
AUTH_KEY_HEADER = "X-AUTH-KEY"


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """Current UTC time truncated to seconds, ISO-8601 without offset."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=0).isoformat()


def _strip_query(path: str) -> str:
    return path.split("?", 1)[0]


def compute_signature(key_id: str, secret: str, timestamp: str, path: str) -> str:
    payload = f"{key_id}:{timestamp}:{_strip_query(path)}"
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha384).digest()
    return base64.b64encode(digest).decode("ascii")


@dataclass(frozen=True)
class SignedHeaders:
    timestamp: str
    signature_header: str

    def as_headers(self) -> Dict[str, str]:
        return {
            QUERYTIME_HEADER: self.timestamp,
            AUTH_KEY_HEADER: self.signature_header,
        }


class SigningService:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sign(self, method: str, path: str, credentials: ApiCredentials) -> SignedHeaders:
        # The method is not part of the signed payload
        timestamp = utc_timestamp(self._clock())
        signature = compute_signature(
            credentials.api_key_id,
            credentials.api_key_password,
            timestamp,
            path,
        )
        return SignedHeaders(
            timestamp=timestamp,
            signature_header=f"{credentials.api_key_public}:{signature}",
        )

    def verify(
        self,
        key_id: str,
        secret: str,
        timestamp: str,
        path: str,
        provided_signature: str,
    ) -> bool:
        if not provided_signature or not timestamp:
            return False
        expected = compute_signature(key_id, secret, timestamp, path)
        return hmac.compare_digest(
            provided_signature.encode("utf-8"),
            expected.encode("utf-8"),
        )


def extract_auth_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """
    Split inbound auth headers into query time, public key and signature.

    Returns an empty dict when X-AUTH-KEY is missing or not "<public>:<signature>".
    """
    lowered = {str(k).lower(): v for k, v in headers.items()}
    auth_key = lowered.get(AUTH_KEY_HEADER.lower())
    if not auth_key:
        return {}
    parts = str(auth_key).split(":")
    if len(parts) != 2:
        return {}
    result = {"api_key_public": parts[0], "signature": parts[1]}
    query_time = lowered.get(QUERYTIME_HEADER.lower())
    if query_time:
        result["query_time"] = str(query_time)
    return result
