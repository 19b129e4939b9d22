"""Credential pool records and their persistence."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from ..gemini import fingerprint
from ..store import KeyValueStore

logger = logging.getLogger(__name__)

POOL_SCHEMA_VERSION = 1
GEMINI_API_KEY_PATTERN = re.compile(r"^AIza[A-Za-z0-9_-]{30,}$")


def pool_key(owner_id: str) -> str:
    return f"credentialPool:{owner_id}"


def pool_schema_key(owner_id: str) -> str:
    return f"credentialPool:{owner_id}:schema"


def rotation_cursor_key(owner_id: str) -> str:
    return f"rotationCursor:{owner_id}"


class CredentialPoolError(RuntimeError):
    """Raised when a persisted pool cannot be read or migrated."""


@dataclass(frozen=True, slots=True)
class CredentialEntry:
    """One managed API credential and its usage on a quota day."""

    secret: str
    usage_count: int = 0
    usage_date: str = ""

    @property
    def hint(self) -> str:
        return fingerprint(self.secret)

    def usage_on(self, quota_day: str) -> int:
        """Calls made on ``quota_day``; a stale date counts as zero."""

        return self.usage_count if self.usage_date == quota_day else 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "secret": self.secret,
                "usage_count": self.usage_count,
                "usage_date": self.usage_date,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "CredentialEntry":
        try:
            payload = json.loads(raw)
            return cls(
                secret=str(payload["secret"]),
                usage_count=int(payload["usage_count"]),
                usage_date=str(payload["usage_date"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise CredentialPoolError(f"Malformed credential entry: {exc}") from exc


@dataclass(slots=True)
class AddCredentialsResult:
    """Outcome of a bulk credential paste."""

    added: list[str] = field(default_factory=list)
    duplicates: int = 0
    invalid: int = 0
    total: int = 0


def is_valid_api_key(token: str) -> bool:
    return bool(GEMINI_API_KEY_PATTERN.match((token or "").strip()))


def parse_credentials(raw: str) -> tuple[list[str], int]:
    """Split a newline/comma separated paste into unique well-formed keys.

    Returns the keys in paste order and the number of malformed tokens.
    """

    if not (raw or "").strip():
        return [], 0
    keys: list[str] = []
    seen: set[str] = set()
    invalid = 0
    for item in re.split(r"[\r\n,]+", raw):
        token = item.strip()
        if not token or token in seen:
            continue
        if not is_valid_api_key(token):
            invalid += 1
            continue
        seen.add(token)
        keys.append(token)
    return keys, invalid


def _legacy_entry(item: Any) -> CredentialEntry:
    if isinstance(item, str):
        return CredentialEntry(secret=item.strip())
    if isinstance(item, dict):
        secret = item.get("secret") or item.get("key")
        usage = item.get("usage") if isinstance(item.get("usage"), dict) else {}
        count = item.get("usage_count", usage.get("count", 0))
        day = item.get("usage_date", usage.get("date", ""))
        if isinstance(secret, str) and secret.strip():
            return CredentialEntry(
                secret=secret.strip(),
                usage_count=int(count or 0),
                usage_date=str(day or ""),
            )
    raise CredentialPoolError(f"Unrecognized legacy credential record: {item!r}")


class CredentialPoolRepository:
    """Read and write an owner's ordered credential pool.

    The pool is a list of JSON entries. A schema marker records the layout
    version; pools written before the marker existed are migrated once on
    first load and parsed strictly afterwards.
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    async def migrate(self, owner_id: str) -> bool:
        """Convert a legacy pool to the current schema. Return True if rewritten."""

        marker = await self._store.get(pool_schema_key(owner_id))
        if marker is not None and int(marker) >= POOL_SCHEMA_VERSION:
            return False

        key = pool_key(owner_id)
        legacy_items: list[Any] = []

        # Oldest layout: the whole pool as one JSON array string
        document = await self._store.get(key)
        if document is not None:
            try:
                parsed = json.loads(document)
            except ValueError as exc:
                raise CredentialPoolError(
                    f"Legacy credential pool for {owner_id} is not valid JSON"
                ) from exc
            if not isinstance(parsed, list):
                raise CredentialPoolError(
                    f"Legacy credential pool for {owner_id} is not a list"
                )
            legacy_items.extend(parsed)

        for raw in await self._store.lrange(key):
            try:
                legacy_items.append(json.loads(raw))
            except ValueError:
                legacy_items.append(raw)

        entries: list[CredentialEntry] = []
        seen: set[str] = set()
        for item in legacy_items:
            entry = _legacy_entry(item)
            if entry.secret in seen:
                continue
            seen.add(entry.secret)
            entries.append(entry)

        await self._store.delete(key)
        if entries:
            await self._store.rpush(key, *(entry.to_json() for entry in entries))
        await self._store.set(pool_schema_key(owner_id), str(POOL_SCHEMA_VERSION))
        if legacy_items:
            logger.info(
                "Migrated credential pool for %s to schema v%d (%d entries)",
                owner_id,
                POOL_SCHEMA_VERSION,
                len(entries),
            )
        return True

    async def load(self, owner_id: str) -> list[CredentialEntry]:
        await self.migrate(owner_id)
        return [
            CredentialEntry.from_json(raw)
            for raw in await self._store.lrange(pool_key(owner_id))
        ]

    async def find(
        self, owner_id: str, secret: str
    ) -> tuple[int, Optional[CredentialEntry]]:
        """Return the current index and stored entry for ``secret``."""

        for index, entry in enumerate(await self.load(owner_id)):
            if entry.secret == secret:
                return index, entry
        return -1, None

    async def save_entry(self, owner_id: str, entry: CredentialEntry) -> bool:
        """Persist ``entry`` in place. Returns False if it was removed meanwhile."""

        index, _ = await self.find(owner_id, entry.secret)
        if index < 0:
            return False
        await self._store.lset(pool_key(owner_id), index, entry.to_json())
        return True

    async def add(self, owner_id: str, raw: str) -> AddCredentialsResult:
        """Append well-formed, previously unknown keys from a bulk paste."""

        keys, invalid = parse_credentials(raw)
        existing = {entry.secret for entry in await self.load(owner_id)}
        result = AddCredentialsResult(invalid=invalid)
        fresh: list[CredentialEntry] = []
        for secret in keys:
            if secret in existing:
                result.duplicates += 1
                continue
            existing.add(secret)
            fresh.append(CredentialEntry(secret=secret))
            result.added.append(fingerprint(secret))

        if fresh:
            await self._store.rpush(
                pool_key(owner_id), *(entry.to_json() for entry in fresh)
            )
            logger.info("Added %d credential(s) for %s", len(fresh), owner_id)
        result.total = len(existing)
        return result

    async def remove(self, owner_id: str, secret: str) -> bool:
        _, entry = await self.find(owner_id, secret.strip())
        if entry is None:
            return False
        await self._store.lrem(pool_key(owner_id), entry.to_json())
        logger.info("Removed credential %s for %s", entry.hint, owner_id)
        return True

    async def describe(
        self, owner_id: str, *, quota_day: str, daily_limit: int
    ) -> list[dict[str, Any]]:
        """Return a listing that never exposes more than the last 4 characters."""

        listing: list[dict[str, Any]] = []
        for entry in await self.load(owner_id):
            used = entry.usage_on(quota_day)
            listing.append(
                {
                    "hint": entry.hint,
                    "usage_count": used,
                    "usage_date": quota_day,
                    "remaining": max(0, daily_limit - used),
                }
            )
        return listing

    async def read_cursor(self, owner_id: str) -> int:
        raw = await self._store.get(rotation_cursor_key(owner_id))
        try:
            return max(0, int(raw)) if raw is not None else 0
        except ValueError:
            return 0

    async def write_cursor(self, owner_id: str, value: int) -> None:
        await self._store.set(rotation_cursor_key(owner_id), str(value))


__all__ = [
    "AddCredentialsResult",
    "CredentialEntry",
    "CredentialPoolError",
    "CredentialPoolRepository",
    "POOL_SCHEMA_VERSION",
    "is_valid_api_key",
    "parse_credentials",
    "pool_key",
    "pool_schema_key",
    "rotation_cursor_key",
]
