"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import PROJECT_ROOT, Settings, get_settings
from .gemini import GeminiSpeechClient
from .logging_handlers import DateStampedFileHandler, cleanup_old_logs
from .logging_settings import parse_logging_settings
from .routers.credentials import router as credentials_router
from .routers.tts import router as tts_router
from .services.credentials import CredentialPoolRepository
from .services.job_cleanup import cleanup_stale_jobs
from .services.jobs import JobOrchestrator
from .services.key_pool import KeyPoolScheduler
from .services.quota import QuotaTracker
from .services.usage import UsageLedger
from .store import KeyValueStore

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _configure_logging(settings: Settings) -> None:
    """Configure logging from LOG_LEVEL, LOG_DIR and ``logging_settings.conf``."""
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    file_settings = parse_logging_settings(PROJECT_ROOT / "logging_settings.conf")
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATEFMT)
    handlers: list[logging.Handler] = []

    if file_settings.terminal_level is not None:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(max(log_level, file_settings.terminal_level))
        handlers.append(console_handler)

    log_dir = settings.log_dir
    if log_dir is not None and file_settings.file_level is not None:
        if not log_dir.is_absolute():
            log_dir = PROJECT_ROOT / log_dir
        file_handler = DateStampedFileHandler(directory=log_dir, prefix="speechpool")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(file_settings.file_level)
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers or [logging.NullHandler()],
        force=True,
    )

    logging.getLogger("speechpool").setLevel(log_level)
    file_settings.apply_channels()

    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Request logs would otherwise repeat on every synthesis call
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    if log_dir is not None:
        cleanup_old_logs(
            [log_dir],
            file_settings.retention_hours,
            logger=logging.getLogger("speechpool.logging"),
        )


def _resolve_under(base: Path, p: Path) -> Path:
    # Allow absolute paths as-is (useful for tests and external mounts).
    if p.is_absolute():
        return p.resolve()
    resolved = (base / p).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"Configured path {resolved} escapes project root {base}")
    return resolved


def create_app() -> FastAPI:
    settings = get_settings()
    _configure_logging(settings)

    store = KeyValueStore(_resolve_under(PROJECT_ROOT, settings.database_path))
    repository = CredentialPoolRepository(store)
    quota = QuotaTracker(repository, daily_limit=settings.daily_key_limit)
    scheduler = KeyPoolScheduler(repository, quota)
    synthesizer = GeminiSpeechClient(settings)
    usage_ledger = UsageLedger(
        store, daily_character_limit=settings.daily_character_limit
    )
    orchestrator = JobOrchestrator(
        store,
        repository,
        scheduler,
        synthesizer,
        chunk_size=settings.chunk_size,
        chunk_timeout=settings.chunk_timeout,
        max_concurrent_chunks=settings.max_concurrent_chunks,
        usage=usage_ledger,
    )

    retention_hours = settings.job_retention_hours
    cleanup_interval_seconds = 3600
    cleanup_task: asyncio.Task | None = None

    async def _job_cleanup_loop() -> None:
        while True:
            try:
                await cleanup_stale_jobs(orchestrator, max_age_hours=retention_hours)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logging.warning("Stale job cleanup run failed: %s", exc)
            await asyncio.sleep(cleanup_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal cleanup_task
        await store.initialize()
        if retention_hours > 0:
            cleanup_task = asyncio.create_task(_job_cleanup_loop())
        logging.getLogger(__name__).info(
            "Speech pool ready: model=%s chunk_size=%d daily_key_limit=%d",
            settings.tts_model,
            settings.chunk_size,
            settings.daily_key_limit,
        )
        try:
            yield
        finally:
            if cleanup_task is not None:
                cleanup_task.cancel()
                with suppress(asyncio.CancelledError):
                    await cleanup_task
            try:
                await asyncio.wait_for(orchestrator.shutdown(), timeout=10.0)
            except asyncio.TimeoutError:
                logging.warning("Job orchestrator shutdown timed out after 10s")
            await GeminiSpeechClient.close_http_clients()
            await store.close()

    app = FastAPI(
        title="Speech Pool",
        version="0.1.0",
        description="Chunked Gemini speech synthesis over a managed API-key pool.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.credential_repository = repository
    app.state.quota_tracker = quota
    app.state.key_pool_scheduler = scheduler
    app.state.usage_ledger = usage_ledger
    app.state.job_orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Failed-Chunks", "Content-Disposition"],
    )

    app.include_router(tts_router)
    app.include_router(credentials_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok", "model": settings.tts_model}

    return app


__all__ = ["create_app"]
