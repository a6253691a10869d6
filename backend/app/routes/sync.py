"""Sync routes: batch apply of client mutations and per-user sync status."""

from fastapi import APIRouter

from ..auth import CurrentUser
from ..database import Database, delete_unit, get_sync_counts, get_unit, upsert_unit
from ..logging_config import get_logger, log_sync_operation
from ..models import (
    SyncFailure,
    SyncItem,
    SyncRequest,
    SyncResponse,
    SyncResult,
    SyncStatusData,
    SyncStatusResponse,
)

logger = get_logger("workshop.sync")
router = APIRouter(prefix="/sync", tags=["sync"])


class RecordAuthorizationError(Exception):
    """The record targets a unit owned by someone else."""


async def apply_item(db, user_id: str, item: SyncItem) -> bool:
    """Apply one mutation.

    Returns:
        True if it changed stored data, False if it was accepted without
        being applied (entity types or actions this server does not handle).

    Raises:
        RecordAuthorizationError: Owner mismatch.
        ValueError: Malformed payload.
    """
    if item.entity_type != "unit":
        logger.info(f"Accepting {item.entity_type}/{item.action} {item.id} without applying")
        return False
    if item.action not in ("create", "update", "delete"):
        logger.info(f"Accepting unknown unit action {item.action} {item.id} without applying")
        return False

    unit_id = item.payload.get("id")
    if not unit_id:
        raise ValueError("Missing unit id in payload")

    payload_owner = item.payload.get("owner_id")
    if payload_owner and payload_owner != user_id:
        raise RecordAuthorizationError("Not authorized to modify this unit")
    existing = await get_unit(db, unit_id)
    if existing and existing["owner_id"] != user_id:
        raise RecordAuthorizationError("Not authorized to modify this unit")

    if item.action == "delete":
        # Deleting an id that is already gone is not an error
        await delete_unit(db, unit_id)
    else:
        # create on an existing id is treated as an update; both are full-snapshot upserts
        await upsert_unit(db, user_id, item.payload)
    return True


@router.post("", response_model=SyncResponse)
async def sync_data(
    request: SyncRequest,
    auth: CurrentUser,
    db: Database,
):
    """
    Apply a batch of queued client mutations.

    Each record is applied independently; a refused record is reported in
    ``failed`` and does not affect its siblings. Applying the same record
    twice leaves the same end state.
    """
    user_id = auth.user_id
    logger.info(f"SYNC | {user_id} | {len(request.items)} items")
    processed = 0
    failed: list[SyncFailure] = []

    for item in request.items:
        try:
            await apply_item(db, user_id, item)
            log_sync_operation(user_id, item.action, item.entity_type, item.id, True)
            processed += 1
        except (RecordAuthorizationError, ValueError) as e:
            log_sync_operation(user_id, item.action, item.entity_type, item.id, False, str(e))
            failed.append(SyncFailure(item=item.model_dump(mode="json"), error=str(e)))
        except Exception as e:
            # Log full error server-side for debugging
            logger.error(f"Database error during {item.action} on {item.entity_type}/{item.id}: {e}")
            log_sync_operation(user_id, item.action, item.entity_type, item.id, False, str(e))
            # Return generic message to client to avoid leaking internal details
            failed.append(
                SyncFailure(
                    item=item.model_dump(mode="json"),
                    error="Database error: operation failed",
                )
            )

    logger.info(f"SYNC COMPLETE | {user_id} | processed={processed} failed={len(failed)}")

    return SyncResponse(
        data=SyncResult(processed=processed, failed=failed),
        message="Sync completed",
    )


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(auth: CurrentUser, db: Database):
    """Per-state unit counts for the authenticated user."""
    counts = await get_sync_counts(db, auth.user_id)
    return SyncStatusResponse(
        data=SyncStatusData(**counts),
        message="Sync status retrieved",
    )
