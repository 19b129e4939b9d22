"""
Speech Synthesis Services Package.

- text_chunker: Splits long text into sentence-aligned chunks
- credentials: Per-owner credential pool persistence and migration
- quota: Quota-day arithmetic and per-credential usage accounting
- key_pool: Rotating credential selection with quota fallback
- jobs: Chunked job lifecycle, dispatch and result assembly
- audio: PCM stitching and WAV packaging
- usage: Per-owner character counters
- job_cleanup: Sweep for jobs whose result was never fetched

Architecture Overview:

    text ──▶ split_text ──▶ job:{id}:chunk:{i} ──▶ KeyPoolScheduler ──▶ Gemini
                                                        │
                                   QuotaTracker ◀───────┤
                                                        ▼
    WAV ◀── assemble_wav ◀── job:{id}:result:{i} ◀──────┘
"""

from .jobs import JobOrchestrator
from .key_pool import KeyPoolScheduler
from .quota import QuotaTracker

__all__ = ["JobOrchestrator", "KeyPoolScheduler", "QuotaTracker"]
