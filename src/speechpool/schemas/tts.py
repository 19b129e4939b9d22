"""Schemas for the speech synthesis job API.

Wire names are camelCase; models accept either form on input.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SynthesisRequest(_CamelModel):
    """Text and voice for a new job or an inline synthesis."""

    text: Optional[str] = Field(default=None, description="Text to synthesize")
    voice: Optional[str] = Field(
        default=None, description="Prebuilt voice name, or 'auto' for the default"
    )


class StartJobResponse(_CamelModel):
    job_id: str = Field(..., alias="jobId")
    total_chunks: int = Field(..., alias="totalChunks")


class ProcessChunkRequest(_CamelModel):
    job_id: str = Field(..., alias="jobId", min_length=1)
    chunk_index: int = Field(..., alias="chunkIndex", ge=0)


class ProcessChunkResponse(_CamelModel):
    chunk_index: int = Field(..., alias="chunkIndex")
    audio: Optional[str] = Field(default=None, description="Base64 PCM audio")
    message: Optional[str] = None


class JobRequest(_CamelModel):
    job_id: str = Field(..., alias="jobId", min_length=1)


class ChunkFailure(_CamelModel):
    chunk_index: int = Field(..., alias="chunkIndex")
    message: str


class JobStatusResponse(_CamelModel):
    job_id: str = Field(..., alias="jobId")
    status: str
    total_chunks: int = Field(..., alias="totalChunks")
    processed_chunks: int = Field(..., alias="processedChunks")
    error: Optional[str] = None
    failed_chunks: list[ChunkFailure] = Field(
        default_factory=list, alias="failedChunks"
    )


class CleanupResponse(_CamelModel):
    ok: bool = True


class UsageResponse(_CamelModel):
    characters: int
    requests: int
    usage_date: str = Field(..., alias="usageDate")
    daily_character_limit: Optional[int] = Field(
        default=None, alias="dailyCharacterLimit"
    )


__all__ = [
    "ChunkFailure",
    "CleanupResponse",
    "JobRequest",
    "JobStatusResponse",
    "ProcessChunkRequest",
    "ProcessChunkResponse",
    "StartJobResponse",
    "SynthesisRequest",
    "UsageResponse",
]
