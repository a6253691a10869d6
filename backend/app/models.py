"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# Sync Models
# =============================================================================

class SyncItem(BaseModel):
    """A single queued mutation pushed by a client.

    ``entity_type`` and ``action`` are free-form so that types this server
    does not apply yet are still accepted.
    """
    id: str = Field(..., min_length=1)
    entity_type: str
    action: str
    payload: dict[str, Any] = {}
    enqueued_at: datetime | None = None
    retry_count: int = 0


class SyncRequest(BaseModel):
    """Batch of mutations to apply, in client enqueue order."""
    items: list[SyncItem]


class SyncFailure(BaseModel):
    """A mutation that was not applied, echoed back with the reason."""
    item: dict[str, Any]
    error: str


class SyncResult(BaseModel):
    processed: int
    failed: list[SyncFailure] = []


class SyncResponse(BaseModel):
    """Response from a batch apply."""
    success: bool = True
    data: SyncResult
    message: str | None = None


class SyncStatusData(BaseModel):
    total_units: int
    synced_units: int
    local_units: int
    syncing_units: int
    conflict_units: int
    last_sync_at: datetime | None = None


class SyncStatusResponse(BaseModel):
    success: bool = True
    data: SyncStatusData
    message: str | None = None


# =============================================================================
# Unit Models
# =============================================================================

class UnitPage(BaseModel):
    """One page of units; ``next_token`` is opaque."""
    items: list[dict[str, Any]]
    next_token: str | None = None
    has_more: bool = False
    total: int


class UnitListResponse(BaseModel):
    success: bool = True
    data: UnitPage
    message: str | None = None


class UnitResponse(BaseModel):
    success: bool = True
    data: dict[str, Any]
    message: str | None = None
