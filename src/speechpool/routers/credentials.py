"""Routes for managing an owner's pool of Gemini API keys."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from ..schemas.credentials import (
    AddCredentialsRequest,
    AddCredentialsResponse,
    CredentialSummary,
    RemoveCredentialRequest,
    RemoveCredentialResponse,
)
from ..services.credentials import CredentialPoolError, CredentialPoolRepository
from ..services.quota import QuotaTracker
from .deps import get_credential_repository, get_quota_tracker, require_owner

router = APIRouter(prefix="/api/credentials", tags=["credentials"])


@router.get("", response_model=list[CredentialSummary])
async def list_credentials(
    owner_id: str = Depends(require_owner),
    repository: CredentialPoolRepository = Depends(get_credential_repository),
    quota: QuotaTracker = Depends(get_quota_tracker),
) -> list[dict[str, Any]]:
    """List the owner's keys by hint with today's usage."""

    try:
        listing = await repository.describe(
            owner_id,
            quota_day=quota.current_quota_day(),
            daily_limit=quota.daily_limit,
        )
    except CredentialPoolError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    return [
        {
            "hint": item["hint"],
            "usageCount": item["usage_count"],
            "usageDate": item["usage_date"],
            "remaining": item["remaining"],
        }
        for item in listing
    ]


@router.post("", response_model=AddCredentialsResponse)
async def add_credentials(
    payload: AddCredentialsRequest,
    owner_id: str = Depends(require_owner),
    repository: CredentialPoolRepository = Depends(get_credential_repository),
) -> dict[str, Any]:
    text = payload.as_text()
    if not text.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No keys provided."
        )
    try:
        result = await repository.add(owner_id, text)
    except CredentialPoolError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    if not result.added and not result.duplicates:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No valid Gemini API keys found.",
        )
    return {
        "added": result.added,
        "duplicates": result.duplicates,
        "invalid": result.invalid,
        "total": result.total,
    }


@router.delete("", response_model=RemoveCredentialResponse)
async def remove_credential(
    payload: RemoveCredentialRequest,
    owner_id: str = Depends(require_owner),
    repository: CredentialPoolRepository = Depends(get_credential_repository),
) -> dict[str, bool]:
    try:
        removed = await repository.remove(owner_id, payload.key)
    except CredentialPoolError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Key not found."
        )
    return {"removed": True}


__all__ = ["router"]
