from __future__ import annotations

import asyncio
import io
import json
import wave
from datetime import datetime, timezone

import pytest

from speechpool.gemini import SpeechSynthesisError
from speechpool.services.credentials import CredentialPoolRepository, pool_key
from speechpool.services.jobs import (
    JOB_INDEX_KEY,
    JobAccessError,
    JobFailedError,
    JobInputError,
    JobNotFoundError,
    JobNotReadyError,
    JobOrchestrator,
    JobSetupError,
    JobStatus,
)
from speechpool.services.key_pool import NO_CREDENTIALS_MESSAGE, KeyPoolScheduler
from speechpool.services.quota import QuotaTracker
from speechpool.services.usage import UsageLedger, UsageLimitError
from speechpool.store import KeyValueStore
from tests.fakes import KEY_A, KEY_B, FakeSynthesizer, pcm_for

OWNER = "owner-1"
FIRST = "First sentence here."
SECOND = "Second sentence here."
THIRD = "Third sentence here."
TEXT = f"{FIRST} {SECOND} {THIRD}"


def _clock() -> datetime:
    return datetime(2024, 3, 3, 9, 0, tzinfo=timezone.utc)


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


def build(
    store: KeyValueStore,
    synthesizer: FakeSynthesizer,
    *,
    chunk_timeout: float = 5.0,
    usage: UsageLedger | None = None,
) -> JobOrchestrator:
    repository = CredentialPoolRepository(store)
    quota = QuotaTracker(repository, daily_limit=30, clock=_clock)
    return JobOrchestrator(
        store,
        repository,
        KeyPoolScheduler(repository, quota),
        synthesizer,
        chunk_size=25,
        chunk_timeout=chunk_timeout,
        max_concurrent_chunks=4,
        usage=usage,
        clock=_clock,
    )


def _frames(audio: bytes) -> bytes:
    with wave.open(io.BytesIO(audio), "rb") as wav:
        return wav.readframes(wav.getnframes())


async def _job_keys(store: KeyValueStore, job_id: str) -> list[str]:
    return await store.keys(f"job:{job_id}")


@pytest.mark.anyio
async def test_create_job_persists_chunks_without_synthesizing(store):
    synthesizer = FakeSynthesizer()
    orchestrator = build(store, synthesizer)

    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    assert created.total_chunks == 3
    assert synthesizer.calls == []
    assert await store.get(f"job:{created.job_id}:chunk:1") == SECOND
    assert created.job_id in await store.smembers(JOB_INDEX_KEY)

    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.status is JobStatus.PENDING
    assert (status.total_chunks, status.processed_chunks) == (3, 0)


@pytest.mark.anyio
@pytest.mark.parametrize(("text", "voice"), [("", "Kore"), ("   ", "Kore"), (TEXT, ""), (TEXT, "  ")])
async def test_create_job_rejects_missing_input(store, text, voice):
    orchestrator = build(store, FakeSynthesizer())

    with pytest.raises(JobInputError):
        await orchestrator.create_job(OWNER, text, voice)

    assert await store.smembers(JOB_INDEX_KEY) == set()


@pytest.mark.anyio
async def test_create_job_without_credentials(store):
    orchestrator = build(store, FakeSynthesizer())

    with pytest.raises(JobSetupError) as excinfo:
        await orchestrator.create_job("owner-without-keys", TEXT, "Kore")

    assert str(excinfo.value) == NO_CREDENTIALS_MESSAGE


@pytest.mark.anyio
async def test_create_job_with_unreadable_pool(store):
    await store.set(pool_key("owner-broken"), "{not json")
    orchestrator = build(store, FakeSynthesizer())

    with pytest.raises(JobSetupError):
        await orchestrator.create_job("owner-broken", TEXT, "Kore")


@pytest.mark.anyio
async def test_result_preserves_order_when_chunks_finish_in_reverse(store):
    delays = {FIRST: 0.06, SECOND: 0.03, THIRD: 0.0}
    synthesizer = FakeSynthesizer(delay=lambda text: delays[text])
    orchestrator = build(store, synthesizer)
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    await orchestrator.run_job(OWNER, created.job_id)

    assert synthesizer.completed == [THIRD, SECOND, FIRST]
    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.status is JobStatus.COMPLETED
    assert status.processed_chunks == 3

    result = await orchestrator.fetch_result(OWNER, created.job_id)

    assert _frames(result.audio) == pcm_for(FIRST) + pcm_for(SECOND) + pcm_for(THIRD)
    assert result.failed_chunks == {}
    assert await _job_keys(store, created.job_id) == []
    assert created.job_id not in await store.smembers(JOB_INDEX_KEY)


@pytest.mark.anyio
async def test_partial_failure_keeps_siblings_and_reports_failed_chunk(store):
    def fail_second(text: str):
        return SpeechSynthesisError("Speech synthesis failed: boom", 500) if text == SECOND else None

    orchestrator = build(store, FakeSynthesizer(fail_text=fail_second))
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    await orchestrator.run_job(OWNER, created.job_id)

    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.status is JobStatus.COMPLETED
    assert status.processed_chunks == 3
    assert list(status.failed_chunks) == [1]
    assert "boom" in status.failed_chunks[1]
    assert status.to_dict()["failed_chunks"][0]["chunk_index"] == 1

    result = await orchestrator.fetch_result(OWNER, created.job_id)

    assert _frames(result.audio) == pcm_for(FIRST) + pcm_for(THIRD)
    assert list(result.failed_chunks) == [1]
    assert result.succeeded_chunks == 2


@pytest.mark.anyio
async def test_job_fails_when_every_chunk_fails(store):
    synthesizer = FakeSynthesizer({KEY_A: SpeechSynthesisError("upstream down", 503)})
    orchestrator = build(store, synthesizer)
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    await orchestrator.run_job(OWNER, created.job_id)

    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.status is JobStatus.FAILED
    assert status.error.startswith("All 3 chunk(s) failed")
    assert len(status.failed_chunks) == 3

    with pytest.raises(JobFailedError):
        await orchestrator.fetch_result(OWNER, created.job_id)


@pytest.mark.anyio
async def test_quota_exhaustion_on_one_key_falls_back_for_chunks(store):
    from speechpool.gemini import QuotaExceededError

    await CredentialPoolRepository(store).add(OWNER, KEY_B)
    synthesizer = FakeSynthesizer({KEY_A: QuotaExceededError("quota", 429)})
    orchestrator = build(store, synthesizer)
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    await orchestrator.run_job(OWNER, created.job_id)
    result = await orchestrator.fetch_result(OWNER, created.job_id)

    assert result.failed_chunks == {}
    assert set(synthesizer.completed) == {FIRST, SECOND, THIRD}
    _, entry_a = await CredentialPoolRepository(store).find(OWNER, KEY_A)
    assert entry_a.usage_count == 30


@pytest.mark.anyio
async def test_other_owner_cannot_touch_job(store):
    orchestrator = build(store, FakeSynthesizer())
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    with pytest.raises(JobAccessError):
        await orchestrator.get_status("intruder", created.job_id)
    with pytest.raises(JobAccessError):
        await orchestrator.fetch_result("intruder", created.job_id)
    with pytest.raises(JobAccessError):
        await orchestrator.cleanup("intruder", created.job_id)
    with pytest.raises(JobAccessError):
        await orchestrator.process_chunk("intruder", created.job_id, 0)

    assert await orchestrator.get_status(OWNER, created.job_id)


@pytest.mark.anyio
async def test_unknown_job(store):
    orchestrator = build(store, FakeSynthesizer())

    with pytest.raises(JobNotFoundError):
        await orchestrator.get_status(OWNER, "tts_missing")


@pytest.mark.anyio
async def test_result_before_completion_is_not_ready(store):
    orchestrator = build(store, FakeSynthesizer())
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")
    await orchestrator.process_chunk(OWNER, created.job_id, 0)

    with pytest.raises(JobNotReadyError):
        await orchestrator.fetch_result(OWNER, created.job_id)

    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.processed_chunks == 1


@pytest.mark.anyio
async def test_process_chunk_is_idempotent(store):
    synthesizer = FakeSynthesizer()
    orchestrator = build(store, synthesizer)
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    first = await orchestrator.process_chunk(OWNER, created.job_id, 2)
    again = await orchestrator.process_chunk(OWNER, created.job_id, 2)

    assert first.audio == again.audio == pcm_for(THIRD)
    assert len(synthesizer.calls) == 1
    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.processed_chunks == 1


@pytest.mark.anyio
@pytest.mark.parametrize("index", [-1, 3, 99])
async def test_process_chunk_rejects_bad_index(store, index):
    orchestrator = build(store, FakeSynthesizer())
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    with pytest.raises(JobInputError):
        await orchestrator.process_chunk(OWNER, created.job_id, index)


@pytest.mark.anyio
async def test_cleanup_removes_every_key(store):
    orchestrator = build(store, FakeSynthesizer())
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")
    await orchestrator.process_chunk(OWNER, created.job_id, 0)

    await orchestrator.cleanup(OWNER, created.job_id)

    assert await _job_keys(store, created.job_id) == []
    assert created.job_id not in await store.smembers(JOB_INDEX_KEY)
    with pytest.raises(JobNotFoundError):
        await orchestrator.get_status(OWNER, created.job_id)


@pytest.mark.anyio
async def test_results_arriving_after_cleanup_are_discarded(store):
    synthesizer = FakeSynthesizer(delay=lambda text: 0.05)
    orchestrator = build(store, synthesizer)
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    task = orchestrator.dispatch(OWNER, created.job_id)
    while (await orchestrator.get_status(OWNER, created.job_id)).status is JobStatus.PENDING:
        await asyncio.sleep(0.001)
    await orchestrator.cleanup(OWNER, created.job_id)
    await task

    assert await _job_keys(store, created.job_id) == []


@pytest.mark.anyio
async def test_chunk_timeout_is_recorded_as_chunk_failure(store):
    synthesizer = FakeSynthesizer(delay=lambda text: 1.0 if text == SECOND else 0.0)
    orchestrator = build(store, synthesizer, chunk_timeout=0.1)
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    await orchestrator.run_job(OWNER, created.job_id)

    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.status is JobStatus.COMPLETED
    assert list(status.failed_chunks) == [1]
    assert "timed out" in status.failed_chunks[1]


@pytest.mark.anyio
async def test_submit_returns_before_chunks_finish(store):
    synthesizer = FakeSynthesizer(delay=lambda text: 0.05)
    orchestrator = build(store, synthesizer)

    created = await orchestrator.submit(OWNER, TEXT, "Kore")

    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.processed_chunks == 0
    for _ in range(100):
        status = await orchestrator.get_status(OWNER, created.job_id)
        if status.status is JobStatus.COMPLETED:
            break
        await asyncio.sleep(0.02)
    assert status.status is JobStatus.COMPLETED


@pytest.mark.anyio
async def test_shutdown_cancels_dispatched_jobs(store):
    orchestrator = build(store, FakeSynthesizer(delay=lambda text: 10.0), chunk_timeout=30.0)
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")
    task = orchestrator.dispatch(OWNER, created.job_id)
    await asyncio.sleep(0.01)

    await orchestrator.shutdown()

    assert task.cancelled()


@pytest.mark.anyio
async def test_synthesize_now_returns_audio_and_leaves_no_state(store):
    orchestrator = build(store, FakeSynthesizer())

    result = await orchestrator.synthesize_now(OWNER, TEXT, "Kore")

    assert _frames(result.audio) == pcm_for(FIRST) + pcm_for(SECOND) + pcm_for(THIRD)
    assert await store.keys("job:") == []
    assert await store.smembers(JOB_INDEX_KEY) == set()


@pytest.mark.anyio
async def test_synthesize_now_cleans_up_after_total_failure(store):
    synthesizer = FakeSynthesizer({KEY_A: SpeechSynthesisError("down", 503)})
    orchestrator = build(store, synthesizer)

    with pytest.raises(JobFailedError):
        await orchestrator.synthesize_now(OWNER, TEXT, "Kore")

    assert await store.keys("job:") == []


@pytest.mark.anyio
async def test_usage_limit_rejects_job_and_records_usage(store):
    usage = UsageLedger(store, daily_character_limit=100, clock=_clock)
    orchestrator = build(store, FakeSynthesizer(), usage=usage)

    await orchestrator.create_job(OWNER, TEXT, "Kore")
    snapshot = await usage.snapshot(OWNER)
    assert (snapshot.characters, snapshot.requests) == (len(TEXT), 1)

    with pytest.raises(UsageLimitError):
        await orchestrator.create_job(OWNER, TEXT, "Kore")
    assert len(await store.smembers(JOB_INDEX_KEY)) == 1


def _slow_hincrby(store: KeyValueStore, delay: float):
    original = store.hincrby

    async def hincrby(key: str, field: str, amount: int = 1) -> int:
        await asyncio.sleep(delay)
        return await original(key, field, amount)

    return hincrby


@pytest.mark.anyio
async def test_cleanup_while_outcome_is_written_leaves_no_keys(store, monkeypatch):
    orchestrator = build(store, FakeSynthesizer())
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")
    monkeypatch.setattr(store, "hincrby", _slow_hincrby(store, 0.05))

    task = orchestrator.dispatch(OWNER, created.job_id)
    while not await store.smembers(f"job:{created.job_id}:done"):
        await asyncio.sleep(0.001)
    await orchestrator.cleanup(OWNER, created.job_id)
    await task

    assert await _job_keys(store, created.job_id) == []
    assert created.job_id not in await store.smembers(JOB_INDEX_KEY)
    with pytest.raises(JobNotFoundError):
        await orchestrator.get_status(OWNER, created.job_id)


@pytest.mark.anyio
async def test_timeout_while_outcome_is_written_still_counts_chunk(store, monkeypatch):
    orchestrator = build(store, FakeSynthesizer(), chunk_timeout=0.2)
    created = await orchestrator.create_job(OWNER, FIRST, "Kore")
    monkeypatch.setattr(store, "hincrby", _slow_hincrby(store, 0.5))

    outcomes = await orchestrator.run_job(OWNER, created.job_id)

    assert outcomes[0].audio == pcm_for(FIRST)
    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.status is JobStatus.COMPLETED
    assert (status.total_chunks, status.processed_chunks) == (1, 1)
    assert status.failed_chunks == {}


@pytest.mark.anyio
async def test_process_chunk_moves_pending_job_to_processing(store):
    orchestrator = build(store, FakeSynthesizer())
    created = await orchestrator.create_job(OWNER, TEXT, "Kore")

    await orchestrator.process_chunk(OWNER, created.job_id, 1)

    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.status is JobStatus.PROCESSING
    assert status.processed_chunks == 1

    await orchestrator.process_chunk(OWNER, created.job_id, 0)
    await orchestrator.process_chunk(OWNER, created.job_id, 2)
    status = await orchestrator.get_status(OWNER, created.job_id)
    assert status.status is JobStatus.COMPLETED


def test_snapshot_serializes_failed_chunks_sorted():
    from speechpool.services.jobs import JobSnapshot

    snapshot = JobSnapshot(
        job_id="tts_1",
        status=JobStatus.COMPLETED,
        total_chunks=3,
        processed_chunks=3,
        failed_chunks={2: "b", 0: "a"},
    )

    payload = snapshot.to_dict()

    assert json.dumps(payload)
    assert [item["chunk_index"] for item in payload["failed_chunks"]] == [0, 2]
