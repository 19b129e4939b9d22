"""
Job Orchestrator for Long-Text Speech Synthesis.

A job owns one long-text request: the text is chunked, each chunk is
persisted on its own, chunks are synthesized independently through the
owner's key pool, and the per-chunk audio is reassembled in index order.

Architecture:
    text → split_text() → job:{id}:chunk:{i}
         → process_chunk(i) ─┬─ KeyPoolScheduler → GeminiSpeechClient
                             └─ job:{id}:result:{i}   (audio or failure)
         → fetch_result() → assemble_wav() → cleanup

State machine: pending → processing → {completed, failed}.

A chunk's failure is recorded against that chunk only; siblings keep going.
The job itself becomes ``failed`` only for setup errors or when no chunk
produced audio. Jobs where some chunks failed still yield a (shorter)
artifact together with the list of failed chunks.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, TYPE_CHECKING

import aiosqlite

from ..store import KeyValueStore
from .audio import assemble_wav
from .credentials import CredentialPoolError, CredentialPoolRepository
from .key_pool import NO_CREDENTIALS_MESSAGE, KeyPoolScheduler, PoolExhaustedError
from .quota import Clock, utc_now
from .text_chunker import split_text
from .usage import UsageLedger

if TYPE_CHECKING:
    from ..gemini import GeminiSpeechClient

logger = logging.getLogger(__name__)

JOB_INDEX_KEY = "jobs:index"
_FAILURE_PREFIX = "failed:"


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def chunk_key(job_id: str, index: int) -> str:
    return f"job:{job_id}:chunk:{index}"


def result_key(job_id: str, index: int) -> str:
    return f"job:{job_id}:result:{index}"


def _done_key(job_id: str) -> str:
    return f"job:{job_id}:done"


def _failures_key(job_id: str) -> str:
    return f"job:{job_id}:failures"


class JobStatus(str, Enum):
    """Lifecycle states of a synthesis job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobError(RuntimeError):
    """Base class for job lifecycle errors."""


class JobInputError(JobError):
    """The request is missing text, voice or carries a bad chunk index."""


class JobNotFoundError(JobError):
    """No job exists under the given id."""


class JobAccessError(JobError):
    """The caller does not own the job."""


class JobNotReadyError(JobError):
    """The job still has unprocessed chunks."""


class JobFailedError(JobError):
    """The job failed during setup or produced no audio at all."""


class JobSetupError(JobError):
    """Job state or the owner's pool could not be prepared."""


@dataclass(slots=True)
class CreatedJob:
    job_id: str
    total_chunks: int


@dataclass(slots=True)
class ChunkOutcome:
    """Terminal result of one chunk: audio on success, a message otherwise."""

    index: int
    audio: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.audio is not None

    def encode(self) -> str:
        if self.audio is not None:
            return base64.b64encode(self.audio).decode("ascii")
        return f"{_FAILURE_PREFIX}{self.error or 'unknown error'}"

    @classmethod
    def decode(cls, index: int, value: str) -> "ChunkOutcome":
        # Base64 never contains ':' so the prefix cannot collide with audio
        if value.startswith(_FAILURE_PREFIX):
            return cls(index, error=value[len(_FAILURE_PREFIX) :])
        return cls(index, audio=base64.b64decode(value))


@dataclass(slots=True)
class JobSnapshot:
    job_id: str
    status: JobStatus
    total_chunks: int
    processed_chunks: int
    error: Optional[str] = None
    failed_chunks: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "total_chunks": self.total_chunks,
            "processed_chunks": self.processed_chunks,
            "error": self.error,
            "failed_chunks": [
                {"chunk_index": index, "message": message}
                for index, message in sorted(self.failed_chunks.items())
            ],
        }


@dataclass(slots=True)
class JobResult:
    job_id: str
    audio: bytes
    total_chunks: int
    failed_chunks: dict[int, str] = field(default_factory=dict)

    @property
    def succeeded_chunks(self) -> int:
        return self.total_chunks - len(self.failed_chunks)


class JobOrchestrator:
    """Create, run, report on and assemble synthesis jobs for owners."""

    def __init__(
        self,
        store: KeyValueStore,
        repository: CredentialPoolRepository,
        scheduler: KeyPoolScheduler,
        synthesizer: "GeminiSpeechClient",
        *,
        chunk_size: int,
        chunk_timeout: float,
        max_concurrent_chunks: int = 8,
        usage: Optional[UsageLedger] = None,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._repository = repository
        self._scheduler = scheduler
        self._synthesizer = synthesizer
        self._chunk_size = chunk_size
        self._chunk_timeout = chunk_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent_chunks)
        self._usage = usage
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()
        # Held while a job's keys are written or purged
        self._job_locks: dict[str, asyncio.Lock] = {}

    def _job_lock(self, job_id: str) -> asyncio.Lock:
        lock = self._job_locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._job_locks[job_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Creation and dispatch
    # ------------------------------------------------------------------

    async def create_job(self, owner_id: str, text: str, voice: str) -> CreatedJob:
        """Chunk ``text`` and persist the job without processing any chunk."""

        if not (text or "").strip():
            raise JobInputError("Text is required.")
        if not (voice or "").strip():
            raise JobInputError("Voice is required.")

        chunks = split_text(text, self._chunk_size)
        if not chunks:
            raise JobInputError("Text is required.")

        if self._usage is not None:
            await self._usage.ensure_allowed(owner_id, len(text))

        try:
            pool = await self._repository.load(owner_id)
        except CredentialPoolError as exc:
            raise JobSetupError(f"Cannot read credential pool: {exc}") from exc
        if not pool:
            raise JobSetupError(NO_CREDENTIALS_MESSAGE)

        job_id = f"tts_{uuid.uuid4().hex}"
        now = self._clock().isoformat()
        try:
            await self._store.hset(
                job_key(job_id),
                {
                    "owner_id": owner_id,
                    "voice": voice.strip(),
                    "status": JobStatus.PENDING.value,
                    "total_chunks": len(chunks),
                    "processed_chunks": 0,
                    "succeeded_chunks": 0,
                    "failed_chunks": 0,
                    "error": "",
                    "created_at": now,
                    "updated_at": now,
                },
            )
            await self._store.sadd(JOB_INDEX_KEY, job_id)
            await self._store.set_many(
                (chunk_key(job_id, index), chunk) for index, chunk in enumerate(chunks)
            )
        except aiosqlite.Error as exc:
            message = f"Could not persist job state: {exc}"
            logger.error("Job %s setup failed: %s", job_id, message)
            await self._mark_failed(job_id, message)
            raise JobSetupError(message) from exc

        if self._usage is not None:
            await self._usage.record(owner_id, len(text))

        logger.info(
            "Created job %s for %s: %d chunk(s), %d chars",
            job_id,
            owner_id,
            len(chunks),
            len(text),
        )
        return CreatedJob(job_id=job_id, total_chunks=len(chunks))

    def dispatch(self, owner_id: str, job_id: str) -> "asyncio.Task[list[ChunkOutcome]]":
        """Start processing every chunk of the job in the background."""

        task = asyncio.create_task(
            self.run_job(owner_id, job_id), name=f"tts-job-{job_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Job task %s failed: %s", task.get_name(), exc, exc_info=exc)

    async def submit(self, owner_id: str, text: str, voice: str) -> CreatedJob:
        """Create a job and dispatch it; returns before any chunk completes."""

        created = await self.create_job(owner_id, text, voice)
        self.dispatch(owner_id, created.job_id)
        return created

    async def run_job(self, owner_id: str, job_id: str) -> list[ChunkOutcome]:
        """Process all chunks concurrently and return their outcomes in order."""

        meta = await self._load_job(owner_id, job_id)
        total = int(meta.get("total_chunks", 0))
        await self._mark_processing(job_id)

        outcomes = await asyncio.gather(
            *(self._run_chunk(owner_id, job_id, index) for index in range(total))
        )
        return list(outcomes)

    async def _run_chunk(self, owner_id: str, job_id: str, index: int) -> ChunkOutcome:
        async with self._semaphore:
            if not await self._store.exists(job_key(job_id)):
                return ChunkOutcome(index, error="Job was cancelled.")
            try:
                return await asyncio.wait_for(
                    self.process_chunk(owner_id, job_id, index),
                    timeout=self._chunk_timeout,
                )
            except asyncio.TimeoutError:
                outcome = ChunkOutcome(
                    index,
                    error=f"Chunk {index} timed out after {self._chunk_timeout:g}s.",
                )
                logger.warning("Job %s: %s", job_id, outcome.error)
                if not await self._record_outcome(job_id, outcome):
                    # The chunk finished recording while it was being cancelled
                    stored = await self._store.get(result_key(job_id, index))
                    if stored is not None:
                        return ChunkOutcome.decode(index, stored)
                return outcome
            except JobError as exc:
                return ChunkOutcome(index, error=str(exc))
            except Exception as exc:
                logger.exception("Job %s chunk %d crashed", job_id, index)
                outcome = ChunkOutcome(index, error=f"Chunk {index} failed: {exc}")
                try:
                    await self._record_outcome(job_id, outcome)
                except aiosqlite.Error:
                    logger.exception(
                        "Could not record failure for job %s chunk %d", job_id, index
                    )
                return outcome

    # ------------------------------------------------------------------
    # Chunk processing
    # ------------------------------------------------------------------

    async def process_chunk(
        self, owner_id: str, job_id: str, chunk_index: int
    ) -> ChunkOutcome:
        """Synthesize one chunk through the owner's key pool and record it.

        Re-running a chunk that already has a result returns that result.
        """

        meta = await self._load_job(owner_id, job_id)
        total = int(meta.get("total_chunks", 0))
        if not 0 <= chunk_index < total:
            raise JobInputError(
                f"Chunk index {chunk_index} is out of range for {total} chunk(s)."
            )

        existing = await self._store.get(result_key(job_id, chunk_index))
        if existing is not None:
            return ChunkOutcome.decode(chunk_index, existing)

        # Chunks driven one by one through the worker binding also start the job
        await self._mark_processing(job_id)

        text = await self._store.get(chunk_key(job_id, chunk_index))
        if text is None:
            outcome = ChunkOutcome(
                chunk_index, error=f"Text for chunk {chunk_index} was not found."
            )
            await self._record_shielded(job_id, outcome)
            return outcome

        try:
            pool = await self._repository.load(owner_id)
        except CredentialPoolError as exc:
            message = f"Cannot read credential pool: {exc}"
            await self._mark_failed(job_id, message)
            raise JobSetupError(message) from exc

        voice = meta.get("voice", "")

        async def _attempt(secret: str) -> bytes:
            return await self._synthesizer.synthesize(secret, text, voice)

        try:
            audio = await self._scheduler.select_and_try(owner_id, _attempt, pool=pool)
            outcome = ChunkOutcome(chunk_index, audio=audio)
        except PoolExhaustedError as exc:
            logger.warning(
                "Job %s chunk %d failed on every credential: %s",
                job_id,
                chunk_index,
                exc.message,
            )
            outcome = ChunkOutcome(
                chunk_index, error=f"Chunk {chunk_index} failed: {exc.message}"
            )

        await self._record_shielded(job_id, outcome)
        return outcome

    async def _record_shielded(self, job_id: str, outcome: ChunkOutcome) -> bool:
        """Record an outcome so that cancelling the caller cannot interrupt it."""

        task = asyncio.ensure_future(self._record_outcome(job_id, outcome))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return await asyncio.shield(task)

    async def _record_outcome(self, job_id: str, outcome: ChunkOutcome) -> bool:
        key = job_key(job_id)
        async with self._job_lock(job_id):
            if not await self._store.exists(key):
                logger.info(
                    "Discarding chunk %d result for removed job %s",
                    outcome.index,
                    job_id,
                )
                self._job_locks.pop(job_id, None)
                return False

            # First writer for an index wins; repeats leave the counters alone
            if not await self._store.sadd(_done_key(job_id), str(outcome.index)):
                return False

            await self._store.set(result_key(job_id, outcome.index), outcome.encode())
            if outcome.succeeded:
                await self._store.hincrby(key, "succeeded_chunks", 1)
            else:
                await self._store.hincrby(key, "failed_chunks", 1)
                await self._store.hset(
                    _failures_key(job_id), {str(outcome.index): outcome.error or ""}
                )
            processed = await self._store.hincrby(key, "processed_chunks", 1)

            meta = await self._store.hgetall(key)
            total = int(meta.get("total_chunks", 0))
            updates: dict[str, object] = {"updated_at": self._clock().isoformat()}
            if processed >= total and meta.get("status") != JobStatus.FAILED.value:
                failed = int(meta.get("failed_chunks", 0))
                if int(meta.get("succeeded_chunks", 0)) > 0:
                    updates["status"] = JobStatus.COMPLETED.value
                    if failed:
                        updates["error"] = f"{failed} of {total} chunk(s) failed."
                    logger.info(
                        "Job %s completed: %d/%d chunk(s) succeeded",
                        job_id,
                        total - failed,
                        total,
                    )
                else:
                    updates["status"] = JobStatus.FAILED.value
                    updates["error"] = (
                        f"All {total} chunk(s) failed. Last error: {outcome.error}"
                    )
                    logger.warning("Job %s failed: no chunk produced audio", job_id)
            await self._store.hset(key, updates)
            return True

    async def _mark_processing(self, job_id: str) -> None:
        async with self._job_lock(job_id):
            status = await self._store.hget(job_key(job_id), "status")
            if status != JobStatus.PENDING.value:
                return
            await self._store.hset(
                job_key(job_id),
                {
                    "status": JobStatus.PROCESSING.value,
                    "updated_at": self._clock().isoformat(),
                },
            )

    async def _mark_failed(self, job_id: str, message: str) -> None:
        try:
            async with self._job_lock(job_id):
                if not await self._store.exists(job_key(job_id)):
                    return
                await self._store.hset(
                    job_key(job_id),
                    {
                        "status": JobStatus.FAILED.value,
                        "error": message,
                        "updated_at": self._clock().isoformat(),
                    },
                )
        except aiosqlite.Error:
            logger.exception("Could not mark job %s as failed", job_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _load_job(self, owner_id: str, job_id: str) -> dict[str, str]:
        if not job_id:
            raise JobInputError("jobId is required.")
        meta = await self._store.hgetall(job_key(job_id))
        if not meta:
            raise JobNotFoundError(f"Job {job_id} was not found.")
        if meta.get("owner_id") != owner_id:
            raise JobAccessError("You do not have access to this job.")
        return meta

    async def _failed_chunks(self, job_id: str) -> dict[int, str]:
        raw = await self._store.hgetall(_failures_key(job_id))
        return {int(index): message for index, message in raw.items()}

    async def get_status(self, owner_id: str, job_id: str) -> JobSnapshot:
        meta = await self._load_job(owner_id, job_id)
        failures = (
            await self._failed_chunks(job_id)
            if int(meta.get("failed_chunks", 0))
            else {}
        )
        return JobSnapshot(
            job_id=job_id,
            status=JobStatus(meta.get("status", JobStatus.PENDING.value)),
            total_chunks=int(meta.get("total_chunks", 0)),
            processed_chunks=int(meta.get("processed_chunks", 0)),
            error=meta.get("error") or None,
            failed_chunks=failures,
        )

    async def fetch_result(self, owner_id: str, job_id: str) -> JobResult:
        """Assemble the job's audio in chunk order, then delete its state."""

        meta = await self._load_job(owner_id, job_id)
        total = int(meta.get("total_chunks", 0))
        processed = int(meta.get("processed_chunks", 0))

        if meta.get("status") == JobStatus.FAILED.value:
            raise JobFailedError(meta.get("error") or "Job failed.")
        if processed < total:
            raise JobNotReadyError(
                f"Job is not finished yet ({processed}/{total} chunks processed)."
            )

        values = await self._store.mget([result_key(job_id, i) for i in range(total)])
        buffers: list[bytes] = []
        failed: dict[int, str] = {}
        for index, value in enumerate(values):
            if value is None:
                failed[index] = f"Result for chunk {index} is missing."
                continue
            outcome = ChunkOutcome.decode(index, value)
            if outcome.audio is not None:
                buffers.append(outcome.audio)
            else:
                failed[index] = outcome.error or "unknown error"

        if not buffers:
            raise JobFailedError("No chunk produced audio.")

        audio = assemble_wav(buffers)
        await self.purge(job_id, total)
        logger.info(
            "Delivered job %s: %d bytes, %d failed chunk(s)",
            job_id,
            len(audio),
            len(failed),
        )
        return JobResult(
            job_id=job_id, audio=audio, total_chunks=total, failed_chunks=failed
        )

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup(self, owner_id: str, job_id: str) -> None:
        """Delete every persisted key of an owned job, finished or not."""

        meta = await self._load_job(owner_id, job_id)
        await self.purge(job_id, int(meta.get("total_chunks", 0)))

    async def purge(self, job_id: str, total_chunks: int) -> None:
        """Delete every key of the job; outcomes still in flight are discarded."""

        keys = [job_key(job_id), _done_key(job_id), _failures_key(job_id)]
        for index in range(total_chunks):
            keys.append(chunk_key(job_id, index))
            keys.append(result_key(job_id, index))
        async with self._job_lock(job_id):
            await self._store.delete(*keys)
            await self._store.srem(JOB_INDEX_KEY, job_id)
        self._job_locks.pop(job_id, None)
        logger.debug("Purged state for job %s", job_id)

    async def list_jobs(self) -> dict[str, dict[str, str]]:
        """Return metadata for every indexed job, dropping dangling index entries."""

        jobs: dict[str, dict[str, str]] = {}
        for job_id in await self._store.smembers(JOB_INDEX_KEY):
            meta = await self._store.hgetall(job_key(job_id))
            if not meta:
                await self._store.srem(JOB_INDEX_KEY, job_id)
                continue
            jobs[job_id] = meta
        return jobs

    # ------------------------------------------------------------------
    # Inline synthesis
    # ------------------------------------------------------------------

    async def synthesize_now(self, owner_id: str, text: str, voice: str) -> JobResult:
        """Run a whole job within the caller's request and return the audio."""

        created = await self.create_job(owner_id, text, voice)
        try:
            await self.run_job(owner_id, created.job_id)
            return await self.fetch_result(owner_id, created.job_id)
        finally:
            if await self._store.exists(job_key(created.job_id)):
                await self.purge(created.job_id, created.total_chunks)

    async def shutdown(self) -> None:
        """Cancel in-flight dispatch tasks."""

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def job_age(meta: dict[str, str], now: datetime) -> Optional[timedelta]:
    """Return how long ago the job was created, if the timestamp parses."""

    created = meta.get("created_at")
    if not created:
        return None
    try:
        return now - datetime.fromisoformat(created)
    except (TypeError, ValueError):
        return None


__all__ = [
    "ChunkOutcome",
    "CreatedJob",
    "JOB_INDEX_KEY",
    "JobAccessError",
    "JobError",
    "JobFailedError",
    "JobInputError",
    "JobNotFoundError",
    "JobNotReadyError",
    "JobOrchestrator",
    "JobResult",
    "JobSetupError",
    "JobSnapshot",
    "JobStatus",
    "chunk_key",
    "job_age",
    "job_key",
    "result_key",
]
