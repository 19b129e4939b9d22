from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from speechpool.gemini import (
    InvalidCredentialError,
    QuotaExceededError,
    SpeechSynthesisError,
)
from speechpool.services.credentials import CredentialEntry, CredentialPoolRepository
from speechpool.services.key_pool import (
    ALL_EXHAUSTED_MESSAGE,
    NO_CREDENTIALS_MESSAGE,
    KeyPoolScheduler,
    PoolExhaustedError,
)
from speechpool.services.quota import QuotaTracker
from speechpool.store import KeyValueStore
from tests.fakes import KEY_A, KEY_B, KEY_C, FakeSynthesizer

TODAY = "2024-03-03"
YESTERDAY = "2024-03-02"
OWNER = "owner-1"


def _clock() -> datetime:
    return datetime(2024, 3, 3, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def repository(tmp_path):
    store = KeyValueStore(tmp_path / "kv.db")
    await store.initialize()
    try:
        yield CredentialPoolRepository(store)
    finally:
        await store.close()


@pytest.fixture
def scheduler(repository):
    quota = QuotaTracker(repository, daily_limit=30, clock=_clock)
    return KeyPoolScheduler(repository, quota)


async def _run(scheduler, synthesizer, **kwargs):
    return await scheduler.select_and_try(
        OWNER, lambda secret: synthesizer.synthesize(secret, "hello", "Kore"), **kwargs
    )


async def _usage(repository, secret):
    _, entry = await repository.find(OWNER, secret)
    return entry.usage_count, entry.usage_date


@pytest.mark.anyio
async def test_rotation_spreads_calls_across_pool(repository, scheduler):
    await repository.add(OWNER, "\n".join([KEY_A, KEY_B, KEY_C]))
    synthesizer = FakeSynthesizer()

    for _ in range(4):
        await _run(scheduler, synthesizer)

    assert synthesizer.secrets_used == [KEY_A, KEY_B, KEY_C, KEY_A]
    assert await repository.read_cursor(OWNER) == 1
    assert await _usage(repository, KEY_A) == (2, TODAY)
    assert await _usage(repository, KEY_B) == (1, TODAY)


@pytest.mark.anyio
async def test_exhausted_credential_is_skipped_without_counting(repository, scheduler):
    await repository.add(OWNER, f"{KEY_A}\n{KEY_B}")
    await repository.save_entry(OWNER, CredentialEntry(KEY_A, 30, TODAY))
    synthesizer = FakeSynthesizer()

    result = await _run(scheduler, synthesizer)

    assert result == b"hellohello"
    assert synthesizer.secrets_used == [KEY_B]
    assert await _usage(repository, KEY_A) == (30, TODAY)
    assert await _usage(repository, KEY_B) == (1, TODAY)


@pytest.mark.anyio
async def test_thirty_first_call_is_served_by_second_credential(repository, scheduler):
    await repository.add(OWNER, f"{KEY_A}\n{KEY_B}")
    synthesizer = FakeSynthesizer()
    only_a = [entry for entry in await repository.load(OWNER) if entry.secret == KEY_A]

    for _ in range(30):
        await _run(scheduler, synthesizer, pool=only_a)
        only_a = [(await repository.find(OWNER, KEY_A))[1]]
    assert await _usage(repository, KEY_A) == (30, TODAY)

    await _run(scheduler, synthesizer)

    assert synthesizer.secrets_used[-1] == KEY_B
    assert await _usage(repository, KEY_A) == (30, TODAY)
    assert await _usage(repository, KEY_B) == (1, TODAY)


@pytest.mark.anyio
async def test_stale_day_usage_counts_as_fresh(repository, scheduler):
    await repository.add(OWNER, KEY_A)
    await repository.save_entry(OWNER, CredentialEntry(KEY_A, 30, YESTERDAY))
    synthesizer = FakeSynthesizer()

    await _run(scheduler, synthesizer)

    assert synthesizer.secrets_used == [KEY_A]
    assert await _usage(repository, KEY_A) == (1, TODAY)


@pytest.mark.anyio
async def test_quota_error_exhausts_credential_and_falls_through(repository, scheduler):
    await repository.add(OWNER, f"{KEY_A}\n{KEY_B}")
    synthesizer = FakeSynthesizer({KEY_A: QuotaExceededError("quota", 429)})

    await _run(scheduler, synthesizer)

    assert synthesizer.secrets_used == [KEY_A, KEY_B]
    assert await _usage(repository, KEY_A) == (30, TODAY)
    assert await repository.read_cursor(OWNER) == 0

    # A is not tried again today
    await _run(scheduler, synthesizer)
    assert synthesizer.secrets_used[-1] == KEY_B


@pytest.mark.anyio
async def test_invalid_credential_is_not_exhausted(repository, scheduler):
    await repository.add(OWNER, f"{KEY_A}\n{KEY_B}")
    synthesizer = FakeSynthesizer({KEY_A: InvalidCredentialError("bad key", 400)})

    await _run(scheduler, synthesizer)

    assert synthesizer.secrets_used == [KEY_A, KEY_B]
    assert await _usage(repository, KEY_A) == (0, "")


@pytest.mark.anyio
async def test_all_failing_credentials_report_last_error(repository, scheduler):
    await repository.add(OWNER, f"{KEY_A}\n{KEY_B}")
    synthesizer = FakeSynthesizer(
        {
            KEY_A: InvalidCredentialError("API key not valid: ...AAAA", 400),
            KEY_B: SpeechSynthesisError("Speech synthesis failed: upstream", 500),
        }
    )

    with pytest.raises(PoolExhaustedError) as excinfo:
        await _run(scheduler, synthesizer)

    assert excinfo.value.message == "Speech synthesis failed: upstream"
    assert excinfo.value.attempts == 2
    assert await repository.read_cursor(OWNER) == 0


@pytest.mark.anyio
async def test_all_exhausted_without_attempts(repository, scheduler):
    await repository.add(OWNER, f"{KEY_A}\n{KEY_B}")
    await repository.save_entry(OWNER, CredentialEntry(KEY_A, 30, TODAY))
    await repository.save_entry(OWNER, CredentialEntry(KEY_B, 30, TODAY))
    synthesizer = FakeSynthesizer()

    with pytest.raises(PoolExhaustedError) as excinfo:
        await _run(scheduler, synthesizer)

    assert excinfo.value.message == ALL_EXHAUSTED_MESSAGE
    assert excinfo.value.attempts == 0
    assert synthesizer.calls == []


@pytest.mark.anyio
async def test_empty_pool(scheduler):
    with pytest.raises(PoolExhaustedError) as excinfo:
        await _run(scheduler, FakeSynthesizer())

    assert excinfo.value.message == NO_CREDENTIALS_MESSAGE


@pytest.mark.anyio
async def test_cursor_beyond_pool_size_wraps(repository, scheduler):
    await repository.add(OWNER, f"{KEY_A}\n{KEY_B}")
    await repository.write_cursor(OWNER, 5)
    synthesizer = FakeSynthesizer()

    await _run(scheduler, synthesizer)

    assert synthesizer.secrets_used == [KEY_B]
    assert await repository.read_cursor(OWNER) == 0


@pytest.mark.anyio
async def test_concurrent_calls_do_not_overshoot_daily_limit(repository, scheduler):
    await repository.add(OWNER, KEY_A)
    await repository.save_entry(OWNER, CredentialEntry(KEY_A, 29, TODAY))
    synthesizer = FakeSynthesizer(delay=lambda text: 0.05)
    snapshot = await repository.load(OWNER)

    outcomes = await asyncio.gather(
        *(_run(scheduler, synthesizer, pool=snapshot) for _ in range(3)),
        return_exceptions=True,
    )

    served = [item for item in outcomes if isinstance(item, bytes)]
    rejected = [item for item in outcomes if isinstance(item, PoolExhaustedError)]
    assert len(served) == 1
    assert len(rejected) == 2
    assert synthesizer.secrets_used == [KEY_A]
    assert await _usage(repository, KEY_A) == (30, TODAY)


@pytest.mark.anyio
async def test_failed_call_releases_its_reservation(repository, scheduler):
    await repository.add(OWNER, KEY_A)
    await repository.save_entry(OWNER, CredentialEntry(KEY_A, 29, TODAY))
    synthesizer = FakeSynthesizer({KEY_A: SpeechSynthesisError("upstream", 500)})

    with pytest.raises(PoolExhaustedError):
        await _run(scheduler, synthesizer)

    synthesizer.failures.clear()
    assert await _run(scheduler, synthesizer) == b"hellohello"
    assert await _usage(repository, KEY_A) == (30, TODAY)
