"""Bybit v5 HMAC request signing."""

from __future__ import annotations

import hashlib
import hmac
import time
from urllib.parse import urlencode


def canonical_query(params: dict) -> str:
    """Query string exactly as sent and signed (insertion order, None dropped)."""
    return urlencode([(k, str(v)) for k, v in params.items() if v is not None])


def sign(secret: str, timestamp: str, api_key: str, recv_window: str, payload: str) -> str:
    """HMAC-SHA256 hex over timestamp + api_key + recv_window + payload."""
    message = f"{timestamp}{api_key}{recv_window}{payload}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def auth_headers(
    api_key: str,
    secret: str,
    recv_window_ms: int,
    payload: str,
    timestamp_ms: int | None = None,
) -> dict[str, str]:
    timestamp = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
    recv_window = str(recv_window_ms)
    return {
        "X-BAPI-API-KEY": api_key,
        "X-BAPI-TIMESTAMP": timestamp,
        "X-BAPI-RECV-WINDOW": recv_window,
        "X-BAPI-SIGN": sign(secret, timestamp, api_key, recv_window, payload),
        "X-BAPI-SIGN-TYPE": "2",
    }
