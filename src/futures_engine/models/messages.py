"""Engine event message schemas.

Same envelope as the Redis Stream protocol so channel messages can be
forwarded to streams without translation.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class StreamMessage(BaseModel):
    """Base message for all engine events."""

    msg_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = ""
    type: str = ""
    payload: dict = {}
    metadata: dict = {}

    def to_redis(self) -> dict[str, str]:
        """Serialize to flat dict for XADD."""
        return {"data": self.model_dump_json()}

    @classmethod
    def from_redis(cls, data: dict[bytes | str, bytes | str]) -> StreamMessage:
        """Deserialize from an XRANGE/XREAD entry."""
        raw = data.get(b"data") or data.get("data")
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return cls.model_validate_json(raw)


class MarketTickMessage(StreamMessage):
    """Market data refresh for one symbol."""

    source: str = "ingestor"
    type: str = "market_tick"


class SignalMessage(StreamMessage):
    """Signal produced by one decision cycle."""

    source: str = "trading_loop"
    type: str = "trading_signal"


class ExecutionMessage(StreamMessage):
    """Position opened, closed or moved to ERROR."""

    source: str = "execution"
    type: str = "execution"


class EngineErrorMessage(StreamMessage):
    """Failure reported by any stage."""

    source: str = "engine"
    type: str = "engine_error"
