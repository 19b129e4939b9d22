"""Credential selection across an owner's managed key pool."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from ..gemini import QuotaExceededError, SpeechSynthesisError
from .credentials import CredentialEntry, CredentialPoolRepository
from .quota import QuotaTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALL_EXHAUSTED_MESSAGE = "Quota exhausted on all credentials."
NO_CREDENTIALS_MESSAGE = "No managed credentials are configured."


class PoolExhaustedError(RuntimeError):
    """Every credential in the pool was skipped or failed for one request."""

    def __init__(self, message: str, *, attempts: int = 0):
        super().__init__(message)
        self.message = message
        self.attempts = attempts


class KeyPoolScheduler:
    """Try credentials in rotation until one serves the request.

    The search starts at the owner's persisted rotation cursor and wraps
    around the pool once. Credentials without quota are skipped. A quota
    failure exhausts the credential for the day; any other failure moves on
    without touching its counters. On success the cursor advances past the
    serving credential so the next search starts on its neighbour.

    Each call is reserved with ``QuotaTracker`` first, so concurrent chunks
    of one owner cannot push a credential past its limit.
    """

    def __init__(self, repository: CredentialPoolRepository, quota: QuotaTracker):
        self._repository = repository
        self._quota = quota

    async def select_and_try(
        self,
        owner_id: str,
        attempt: Callable[[str], Awaitable[T]],
        *,
        pool: Optional[Sequence[CredentialEntry]] = None,
    ) -> T:
        entries = list(pool) if pool is not None else await self._repository.load(
            owner_id
        )
        size = len(entries)
        if size == 0:
            raise PoolExhaustedError(NO_CREDENTIALS_MESSAGE)

        start = (await self._repository.read_cursor(owner_id)) % size
        last_error: Optional[str] = None
        attempts = 0

        for offset in range(size):
            index = (start + offset) % size
            entry = entries[index]
            if not self._quota.remaining(entry):
                continue
            reserved = await self._quota.reserve(owner_id, entry)
            if reserved is None:
                continue

            attempts += 1
            try:
                result = await attempt(reserved.secret)
                await self._repository.write_cursor(owner_id, (index + 1) % size)
                await self._quota.record_success(owner_id, reserved)
                return result
            except QuotaExceededError as exc:
                last_error = exc.message
                await self._quota.record_exhaustion(owner_id, reserved)
            except SpeechSynthesisError as exc:
                last_error = exc.message
                logger.warning(
                    "Credential %s failed for %s: %s",
                    reserved.hint,
                    owner_id,
                    exc.message,
                )
            finally:
                self._quota.release(owner_id, reserved)

        raise PoolExhaustedError(last_error or ALL_EXHAUSTED_MESSAGE, attempts=attempts)


__all__ = [
    "ALL_EXHAUSTED_MESSAGE",
    "KeyPoolScheduler",
    "NO_CREDENTIALS_MESSAGE",
    "PoolExhaustedError",
]
