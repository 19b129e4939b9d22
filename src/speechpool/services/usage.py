"""Per-owner character and request counters for each quota day."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..store import KeyValueStore
from .quota import Clock, current_quota_day, utc_now


def usage_key(owner_id: str) -> str:
    return f"usage:{owner_id}"


class UsageLimitError(RuntimeError):
    """Raised when a request would push an owner past the daily character cap."""


@dataclass(slots=True)
class UsageSnapshot:
    characters: int
    requests: int
    usage_date: str
    daily_character_limit: Optional[int] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "characters": self.characters,
            "requests": self.requests,
            "usage_date": self.usage_date,
            "daily_character_limit": self.daily_character_limit,
        }


class UsageLedger:
    """Track how much text each owner submitted on the current quota day."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        daily_character_limit: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._limit = daily_character_limit
        self._clock = clock

    async def snapshot(self, owner_id: str) -> UsageSnapshot:
        today = current_quota_day(self._clock())
        raw = await self._store.hgetall(usage_key(owner_id))
        if raw.get("usage_date") != today:
            return UsageSnapshot(0, 0, today, self._limit)
        return UsageSnapshot(
            characters=int(raw.get("characters", 0)),
            requests=int(raw.get("requests", 0)),
            usage_date=today,
            daily_character_limit=self._limit,
        )

    async def ensure_allowed(self, owner_id: str, characters: int) -> None:
        if self._limit is None:
            return
        current = await self.snapshot(owner_id)
        if current.characters + characters > self._limit:
            raise UsageLimitError(
                f"Daily character limit reached: requested {characters:,} characters "
                f"with {current.characters:,}/{self._limit:,} already used."
            )

    async def record(self, owner_id: str, characters: int, requests: int = 1) -> None:
        current = await self.snapshot(owner_id)
        await self._store.hset(
            usage_key(owner_id),
            {
                "characters": current.characters + characters,
                "requests": current.requests + requests,
                "usage_date": current.usage_date,
            },
        )


__all__ = ["UsageLedger", "UsageLimitError", "UsageSnapshot", "usage_key"]
