"""
Shared data models: the queued linking request (also its on-disk record)
and the request/response bodies of the queue API.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

_clock_lock = threading.Lock()
_last_ts = 0


def next_timestamp_ms() -> int:
    """Epoch millis that never goes backwards, even if the wall clock does."""
    global _last_ts
    with _clock_lock:
        now = int(time.time() * 1000)
        _last_ts = max(now, _last_ts)
        return _last_ts


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SourceRef(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    channel_id: str
    message_id: str


class LinkingRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source_ref: SourceRef
    guild_id: Optional[str] = None
    subject_id: str
    subject_label: str
    image_urls: List[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=next_timestamp_ms)
    retry_count: int = Field(0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _upgrade_flat_record(cls, data: Any) -> Any:
        # queue files written by the previous bot kept the message locator,
        # user and timestamp at the top level
        if isinstance(data, dict) and "sourceRef" not in data and "source_ref" not in data and "messageId" in data:
            data = dict(data)
            data["sourceRef"] = {"channelId": data.pop("channelId", ""), "messageId": data.pop("messageId")}
            if "userId" in data:
                data["subjectId"] = data.pop("userId")
            if "userTag" in data:
                data["subjectLabel"] = data.pop("userTag")
            if "timestamp" in data:
                data["createdAt"] = data.pop("timestamp")
        return data

    @classmethod
    def create(
        cls,
        channel_id: str,
        message_id: str,
        subject_id: str,
        subject_label: str,
        guild_id: Optional[str] = None,
        image_urls: Iterable[str] = (),
    ) -> "LinkingRequest":
        return cls(
            source_ref=SourceRef(channel_id=channel_id, message_id=message_id),
            guild_id=guild_id,
            subject_id=subject_id,
            subject_label=subject_label,
            image_urls=list(image_urls),
        )

    def with_retry(self) -> "LinkingRequest":
        return self.model_copy(update={"retry_count": self.retry_count + 1}, deep=True)

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True)

    def to_legacy(self) -> "LegacyRequestRecord":
        return LegacyRequestRecord(
            id=self.id,
            message_id=self.source_ref.message_id,
            channel_id=self.source_ref.channel_id,
            guild_id=self.guild_id,
            user_id=self.subject_id,
            user_tag=self.subject_label,
            image_urls=list(self.image_urls),
            timestamp=self.created_at,
            retry_count=self.retry_count,
        )


# Queue API bodies


class PendingResponse(CamelModel):
    success: bool = True
    count: int
    requests: List[LinkingRequest] = Field(default_factory=list)


class ResultPayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, strict=True)

    request_id: str
    success: bool
    player_tag: Optional[str] = None
    error_message: Optional[str] = None


class ResultResponse(CamelModel):
    success: bool = True
    action: str
    message: str
    retry_count: Optional[int] = None


class StatsResponse(CamelModel):
    success: bool = True
    queue_size: int
    oldest_request_timestamp: Optional[int] = None
    newest_request_timestamp: Optional[int] = None

    @classmethod
    def from_requests(cls, requests: Sequence[LinkingRequest]) -> "StatsResponse":
        if not requests:
            return cls(queue_size=0)
        # requeued items sit at the tail with their original created_at
        timestamps = [r.created_at for r in requests]
        return cls(
            queue_size=len(requests),
            oldest_request_timestamp=min(timestamps),
            newest_request_timestamp=max(timestamps),
        )


class HealthResponse(CamelModel):
    status: str = "healthy"
    queue_size: int
    timestamp: int


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


# Flat shapes served under /api for workers built against the previous bot


class LegacyRequestRecord(CamelModel):
    id: str
    message_id: str
    channel_id: str
    guild_id: Optional[str] = None
    user_id: str
    user_tag: str
    image_urls: List[str] = Field(default_factory=list)
    timestamp: int
    retry_count: int


class LegacyPendingResponse(CamelModel):
    success: bool = True
    count: int
    requests: List[LegacyRequestRecord] = Field(default_factory=list)


class LegacyStatsResponse(CamelModel):
    success: bool = True
    queue_size: int
    oldest_request: Optional[int] = None
    newest_request: Optional[int] = None

    @classmethod
    def from_stats(cls, stats: StatsResponse) -> "LegacyStatsResponse":
        return cls(
            queue_size=stats.queue_size,
            oldest_request=stats.oldest_request_timestamp,
            newest_request=stats.newest_request_timestamp,
        )
