"""Pydantic models for the records proxy API."""

from typing import Any

from pydantic import BaseModel, Field


class CollectionResponse(BaseModel):
    """An owner's collection of record documents."""

    owner_id: str
    version: int = Field(ge=0, description="0 when the collection does not exist yet")
    items: dict[str, dict[str, Any]] = Field(default_factory=dict)


class WriteCollectionRequest(BaseModel):
    """Full replacement of an owner's collection."""

    items: dict[str, dict[str, Any]]


class WriteResponse(BaseModel):
    owner_id: str
    version: int


class HealthResponse(BaseModel):
    status: str
    storage: str


class ErrorResponse(BaseModel):
    detail: str
    error_code: str | None = None


class PreconditionFailedResponse(BaseModel):
    """Returned with 412 when the collection version moved on."""

    detail: str
    error_code: str = "PRECONDITION_FAILED"
    context: dict[str, Any] = Field(default_factory=dict)
