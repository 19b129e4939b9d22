"""Per-credential daily quota accounting.

The provider's quota window resets at 08:00 UTC (15:00 in Vietnam), not at
local midnight. Every counter here is keyed by that shifted "quota day" so a
credential's usage resets exactly once per provider reset.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .credentials import CredentialEntry, CredentialPoolRepository

logger = logging.getLogger(__name__)

QUOTA_RESET_OFFSET = timedelta(hours=8)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def current_quota_day(now: Optional[datetime] = None) -> str:
    """Return the quota day (``YYYY-MM-DD``) containing ``now``."""

    reference = (now or utc_now()).astimezone(timezone.utc)
    return (reference - QUOTA_RESET_OFFSET).date().isoformat()


def has_remaining(entry: CredentialEntry, daily_limit: int, quota_day: str) -> bool:
    return entry.usage_date != quota_day or entry.usage_count < daily_limit


def with_success(entry: CredentialEntry, quota_day: str) -> CredentialEntry:
    """Count one successful call, resetting a stale day first."""

    if entry.usage_date != quota_day:
        return replace(entry, usage_count=1, usage_date=quota_day)
    return replace(entry, usage_count=entry.usage_count + 1)


def with_exhaustion(
    entry: CredentialEntry, daily_limit: int, quota_day: str
) -> CredentialEntry:
    """Mark the credential as spent for the rest of ``quota_day``."""

    return replace(entry, usage_count=daily_limit, usage_date=quota_day)


class QuotaTracker:
    """Apply quota rules to stored credential entries.

    Writes go through ``CredentialPoolRepository`` and are awaited before the
    caller moves on. A call must be reserved before it is made: the
    reservation rereads the stored counter under the owner's lock and counts
    calls still in flight, so one process never runs a credential past its
    limit. Separate processes sharing a pool can still overshoot by a call.
    """

    def __init__(
        self,
        repository: CredentialPoolRepository,
        *,
        daily_limit: int,
        clock: Clock = utc_now,
    ):
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        self._repository = repository
        self.daily_limit = daily_limit
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[tuple[str, str], int] = {}

    def current_quota_day(self) -> str:
        return current_quota_day(self._clock())

    def remaining(self, entry: CredentialEntry) -> bool:
        return has_remaining(entry, self.daily_limit, self.current_quota_day())

    def in_flight(self, owner_id: str, secret: str) -> int:
        return self._in_flight.get((owner_id, secret), 0)

    async def reserve(
        self, owner_id: str, entry: CredentialEntry
    ) -> Optional[CredentialEntry]:
        """Claim one call on ``entry``; return the stored entry or None.

        None means the credential was removed or has no headroom once calls
        already in flight are counted. Every successful reservation must be
        paired with ``release``.
        """

        async with self._lock_for(owner_id):
            _, stored = await self._repository.find(owner_id, entry.secret)
            if stored is None:
                return None
            pending = self.in_flight(owner_id, stored.secret)
            used = stored.usage_on(self.current_quota_day())
            if used + pending >= self.daily_limit:
                return None
            self._in_flight[(owner_id, stored.secret)] = pending + 1
            return stored

    def release(self, owner_id: str, entry: CredentialEntry) -> None:
        key = (owner_id, entry.secret)
        pending = self._in_flight.get(key, 0) - 1
        if pending > 0:
            self._in_flight[key] = pending
        else:
            self._in_flight.pop(key, None)

    def _lock_for(self, owner_id: str) -> asyncio.Lock:
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[owner_id] = lock
        return lock

    async def _update(
        self,
        owner_id: str,
        entry: CredentialEntry,
        apply: Callable[[CredentialEntry], CredentialEntry],
    ) -> CredentialEntry:
        async with self._lock_for(owner_id):
            _, stored = await self._repository.find(owner_id, entry.secret)
            updated = apply(stored or entry)
            if stored is not None:
                await self._repository.save_entry(owner_id, updated)
            return updated

    async def record_success(
        self, owner_id: str, entry: CredentialEntry
    ) -> CredentialEntry:
        quota_day = self.current_quota_day()
        return await self._update(
            owner_id, entry, lambda current: with_success(current, quota_day)
        )

    async def record_exhaustion(
        self, owner_id: str, entry: CredentialEntry
    ) -> CredentialEntry:
        quota_day = self.current_quota_day()
        updated = await self._update(
            owner_id,
            entry,
            lambda current: with_exhaustion(current, self.daily_limit, quota_day),
        )
        logger.info(
            "Credential %s exhausted for quota day %s", entry.hint, quota_day
        )
        return updated


__all__ = [
    "QUOTA_RESET_OFFSET",
    "QuotaTracker",
    "current_quota_day",
    "has_remaining",
    "utc_now",
    "with_exhaustion",
    "with_success",
]
