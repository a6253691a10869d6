"""Unit routes: authoritative unit listing used by client pulls."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..auth import CurrentUser
from ..config import Settings, get_settings
from ..database import Database, decode_next_token, encode_next_token, get_unit, list_units
from ..logging_config import get_logger
from ..models import UnitListResponse, UnitPage, UnitResponse

logger = get_logger("workshop.units")
router = APIRouter(prefix="/units", tags=["units"])


@router.get("", response_model=UnitListResponse)
async def get_units(
    auth: CurrentUser,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
    owner_id: str | None = None,
    limit: int = Query(default=50, ge=1),
    next_token: str | None = None,
):
    """
    List the authenticated user's units, most recently updated first.

    ``owner_id`` may only name the caller. ``limit`` is capped by the
    server's ``max_page_size``.
    """
    if owner_id and owner_id != auth.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot list units of another user",
        )
    try:
        offset = decode_next_token(next_token)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    page_size = min(limit, settings.max_page_size)
    items, total = await list_units(db, auth.user_id, page_size, offset)
    has_more = offset + len(items) < total
    logger.info(f"PULL | {auth.user_id} | {len(items)} of {total} units")

    return UnitListResponse(
        data=UnitPage(
            items=items,
            next_token=encode_next_token(offset + len(items)) if has_more else None,
            has_more=has_more,
            total=total,
        )
    )


@router.get("/{unit_id}", response_model=UnitResponse)
async def get_unit_by_id(unit_id: str, auth: CurrentUser, db: Database):
    unit = await get_unit(db, unit_id)
    if unit is None or (unit["owner_id"] != auth.user_id and not unit.get("is_public")):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found")
    return UnitResponse(data=unit)
