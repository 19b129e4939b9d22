"""Speech synthesis job endpoints.

  POST /api/tts/start          create a job and dispatch its chunks
  POST /api/tts/process-chunk  synthesize one chunk (external worker binding)
  GET  /api/tts/status         progress of a job
  GET  /api/tts/result         assembled WAV, deletes job state
  POST /api/tts/cleanup        delete job state without fetching
  POST /api/tts/managed        synthesize inline and return the WAV
  GET  /api/tts/usage          characters submitted on the current quota day
"""

from __future__ import annotations

import base64
import json
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, Response

from ..schemas.tts import (
    CleanupResponse,
    JobRequest,
    JobStatusResponse,
    ProcessChunkRequest,
    ProcessChunkResponse,
    StartJobResponse,
    SynthesisRequest,
    UsageResponse,
)
from ..services.jobs import (
    JobAccessError,
    JobError,
    JobFailedError,
    JobInputError,
    JobNotFoundError,
    JobNotReadyError,
    JobOrchestrator,
    JobResult,
    JobSetupError,
)
from ..services.key_pool import NO_CREDENTIALS_MESSAGE
from ..services.usage import UsageLedger, UsageLimitError
from .deps import get_orchestrator, get_usage_ledger, require_owner

router = APIRouter(prefix="/api/tts", tags=["tts"])

_JOB_ERROR_STATUS: tuple[tuple[type[JobError], int], ...] = (
    (JobInputError, status.HTTP_400_BAD_REQUEST),
    (JobAccessError, status.HTTP_403_FORBIDDEN),
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (JobNotReadyError, status.HTTP_409_CONFLICT),
    (JobFailedError, 422),
)


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, UsageLimitError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, JobSetupError):
        code = (
            status.HTTP_400_BAD_REQUEST
            if str(exc) == NO_CREDENTIALS_MESSAGE
            else status.HTTP_503_SERVICE_UNAVAILABLE
        )
        raise HTTPException(status_code=code, detail=str(exc)) from exc
    for error_type, code in _JOB_ERROR_STATUS:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=code, detail=str(exc)) from exc
    raise exc


def _failed_chunks_header(result: JobResult) -> dict[str, str]:
    if not result.failed_chunks:
        return {}
    payload = [
        {"chunkIndex": index, "message": message}
        for index, message in sorted(result.failed_chunks.items())
    ]
    return {"X-Failed-Chunks": json.dumps(payload)}


def _wav_response(result: JobResult) -> Response:
    headers = {
        "Content-Disposition": f'attachment; filename="{result.job_id}.wav"',
        **_failed_chunks_header(result),
    }
    return Response(content=result.audio, media_type="audio/wav", headers=headers)


@router.post(
    "/start",
    response_model=StartJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_job(
    payload: SynthesisRequest,
    owner_id: str = Depends(require_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Chunk the text, persist the job and return before any chunk runs."""

    try:
        created = await orchestrator.submit(owner_id, payload.text or "", payload.voice or "")
    except (JobError, UsageLimitError) as exc:
        _raise_http(exc)
    return {"jobId": created.job_id, "totalChunks": created.total_chunks}


@router.post("/process-chunk", response_model=ProcessChunkResponse)
async def process_chunk(
    payload: ProcessChunkRequest,
    owner_id: str = Depends(require_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Any:
    try:
        outcome = await orchestrator.process_chunk(
            owner_id, payload.job_id, payload.chunk_index
        )
    except JobError as exc:
        _raise_http(exc)

    if outcome.audio is None:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"chunkIndex": outcome.index, "message": outcome.error},
        )
    return {
        "chunkIndex": outcome.index,
        "audio": base64.b64encode(outcome.audio).decode("ascii"),
    }


@router.get("/status", response_model=JobStatusResponse)
async def job_status(
    job_id: str = Query(..., alias="jobId", min_length=1),
    owner_id: str = Depends(require_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        snapshot = await orchestrator.get_status(owner_id, job_id)
    except JobError as exc:
        _raise_http(exc)
    return {
        "jobId": snapshot.job_id,
        "status": snapshot.status.value,
        "totalChunks": snapshot.total_chunks,
        "processedChunks": snapshot.processed_chunks,
        "error": snapshot.error,
        "failedChunks": [
            {"chunkIndex": index, "message": message}
            for index, message in sorted(snapshot.failed_chunks.items())
        ],
    }


@router.get("/result")
async def job_result(
    job_id: str = Query(..., alias="jobId", min_length=1),
    owner_id: str = Depends(require_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Return the assembled WAV; the job's state is removed afterwards."""

    try:
        result = await orchestrator.fetch_result(owner_id, job_id)
    except JobError as exc:
        _raise_http(exc)
    return _wav_response(result)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_job(
    payload: JobRequest,
    owner_id: str = Depends(require_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> dict[str, bool]:
    try:
        await orchestrator.cleanup(owner_id, payload.job_id)
    except JobError as exc:
        _raise_http(exc)
    return {"ok": True}


@router.post("/managed")
async def managed_synthesis(
    payload: SynthesisRequest,
    owner_id: str = Depends(require_owner),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Synthesize the whole text within this request using the key pool."""

    try:
        result = await orchestrator.synthesize_now(
            owner_id, payload.text or "", payload.voice or ""
        )
    except JobFailedError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)
        ) from exc
    except (JobError, UsageLimitError) as exc:
        _raise_http(exc)
    return _wav_response(result)


@router.get("/usage", response_model=UsageResponse)
async def usage(
    owner_id: str = Depends(require_owner),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> dict[str, Any]:
    snapshot = await ledger.snapshot(owner_id)
    return {
        "characters": snapshot.characters,
        "requests": snapshot.requests,
        "usageDate": snapshot.usage_date,
        "dailyCharacterLimit": snapshot.daily_character_limit,
    }


__all__ = ["router"]
