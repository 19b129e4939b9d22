from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from speechpool.services.credentials import CredentialPoolRepository
from speechpool.services.job_cleanup import cleanup_stale_jobs
from speechpool.services.jobs import JOB_INDEX_KEY, JobOrchestrator, job_key
from speechpool.services.key_pool import KeyPoolScheduler
from speechpool.services.quota import QuotaTracker
from speechpool.store import KeyValueStore
from tests.fakes import KEY_A, FakeSynthesizer

OWNER = "owner-1"
NOW = datetime(2024, 3, 3, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def store(tmp_path):
    kv = KeyValueStore(tmp_path / "kv.db")
    await kv.initialize()
    await CredentialPoolRepository(kv).add(OWNER, KEY_A)
    try:
        yield kv
    finally:
        await kv.close()


def _orchestrator(store: KeyValueStore, clock: FakeClock) -> JobOrchestrator:
    repository = CredentialPoolRepository(store)
    return JobOrchestrator(
        store,
        repository,
        KeyPoolScheduler(repository, QuotaTracker(repository, daily_limit=30)),
        FakeSynthesizer(),
        chunk_size=2500,
        chunk_timeout=5.0,
        clock=clock,
    )


@pytest.mark.anyio
async def test_cleanup_stale_jobs_removes_only_old_jobs(store):
    clock = FakeClock(NOW - timedelta(hours=30))
    orchestrator = _orchestrator(store, clock)
    stale = await orchestrator.create_job(OWNER, "Old request.", "Kore")
    clock.now = NOW - timedelta(hours=1)
    fresh = await orchestrator.create_job(OWNER, "New request.", "Kore")

    removed = await cleanup_stale_jobs(orchestrator, max_age_hours=24, now=NOW)

    assert removed == 1
    assert await store.keys(f"job:{stale.job_id}") == []
    assert await store.exists(job_key(fresh.job_id))
    assert await store.smembers(JOB_INDEX_KEY) == {fresh.job_id}


@pytest.mark.anyio
async def test_cleanup_disabled_with_zero_retention(store):
    orchestrator = _orchestrator(store, FakeClock(NOW - timedelta(days=10)))
    await orchestrator.create_job(OWNER, "Ancient request.", "Kore")

    assert await cleanup_stale_jobs(orchestrator, max_age_hours=0, now=NOW) == 0


@pytest.mark.anyio
async def test_dangling_index_entries_are_dropped(store):
    orchestrator = _orchestrator(store, FakeClock(NOW))
    await store.sadd(JOB_INDEX_KEY, "tts_gone")

    assert await cleanup_stale_jobs(orchestrator, max_age_hours=24, now=NOW) == 0
    assert await store.smembers(JOB_INDEX_KEY) == set()
