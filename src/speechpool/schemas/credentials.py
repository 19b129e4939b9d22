"""Schemas for managing an owner's credential pool."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class AddCredentialsRequest(BaseModel):
    """Bulk paste of keys separated by newlines or commas, or a list of keys."""

    keys: str | list[str] = Field(..., description="API keys to add")

    def as_text(self) -> str:
        if isinstance(self.keys, list):
            return "\n".join(self.keys)
        return self.keys


class AddCredentialsResponse(BaseModel):
    added: list[str] = Field(
        default_factory=list, description="Hints of the newly added keys"
    )
    duplicates: int = 0
    invalid: int = 0
    total: int = 0


class RemoveCredentialRequest(BaseModel):
    key: str = Field(..., min_length=1)


class RemoveCredentialResponse(BaseModel):
    removed: bool


class CredentialSummary(BaseModel):
    """Listing entry; only the last four characters of a key are exposed."""

    model_config = ConfigDict(populate_by_name=True)

    hint: str
    usage_count: int = Field(..., alias="usageCount")
    usage_date: str = Field(..., alias="usageDate")
    remaining: int


__all__ = [
    "AddCredentialsRequest",
    "AddCredentialsResponse",
    "CredentialSummary",
    "RemoveCredentialRequest",
    "RemoveCredentialResponse",
]
