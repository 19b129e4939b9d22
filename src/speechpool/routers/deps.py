"""Shared request dependencies for the API routers."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from ..services.credentials import CredentialPoolRepository
from ..services.jobs import JobOrchestrator
from ..services.quota import QuotaTracker
from ..services.usage import UsageLedger


def require_owner(
    x_owner_id: Optional[str] = Header(default=None, alias="X-Owner-Id"),
) -> str:
    """Return the authenticated owner id forwarded by the auth layer."""

    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
        )
    return owner_id


def _service(request: Request, name: str, label: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not available",
        )
    return service


def get_orchestrator(request: Request) -> JobOrchestrator:
    return _service(request, "job_orchestrator", "Job orchestrator")


def get_credential_repository(request: Request) -> CredentialPoolRepository:
    return _service(request, "credential_repository", "Credential pool")


def get_quota_tracker(request: Request) -> QuotaTracker:
    return _service(request, "quota_tracker", "Quota tracker")


def get_usage_ledger(request: Request) -> UsageLedger:
    return _service(request, "usage_ledger", "Usage ledger")


__all__ = [
    "get_credential_repository",
    "get_orchestrator",
    "get_quota_tracker",
    "get_usage_ledger",
    "require_owner",
]
