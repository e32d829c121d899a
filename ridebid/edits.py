from datetime import datetime, timezone
from typing import List, Optional
import logging

import pydantic
from pydantic import TypeAdapter
from sqlalchemy import select, insert, update, and_

from . import models, rides
from .errors import EditAlreadyPending, EditNotPending, InvalidTransition, NotFound, ValidationError
from .models import utcnow
from .schemas import ItineraryChange, Ride, RideEdit

logger = logging.getLogger(__name__)

ITINERARY_FIELDS = (
    "pickup_location",
    "pickup_lat",
    "pickup_lng",
    "dropoff_location",
    "dropoff_lat",
    "dropoff_lng",
    "scheduled_time",
    "special_instructions",
)
# derived from the coordinates, refreshed alongside them
DERIVED_FIELDS = ("estimated_distance",)

_datetime = TypeAdapter(datetime)


def _row_to_edit(row) -> RideEdit:
    return RideEdit.model_validate(dict(row._mapping))


def itinerary_of(ride: Ride) -> dict:
    return ride.model_dump(include=set(ITINERARY_FIELDS), mode="json")


def _clean_proposal(proposed_data: dict) -> dict:
    derived = {k: v for k, v in proposed_data.items() if k in DERIVED_FIELDS}
    itinerary = {k: v for k, v in proposed_data.items() if k not in DERIVED_FIELDS}
    try:
        change = ItineraryChange.model_validate(itinerary)
    except pydantic.ValidationError as e:
        err = e.errors()[0]
        where = ".".join(str(p) for p in err["loc"]) or "proposal"
        raise ValidationError(f"invalid {where}: {err['msg']}")
    cleaned = change.model_dump(exclude_unset=True, mode="json")
    for required in ("pickup_location", "dropoff_location", "scheduled_time"):
        if required in cleaned and cleaned[required] is None:
            raise ValidationError(f"{required} cannot be cleared")
    return {**cleaned, **derived}


def _to_columns(data: dict) -> dict:
    values = dict(data)
    if values.get("scheduled_time") is not None:
        when = _datetime.validate_python(values["scheduled_time"])
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        values["scheduled_time"] = when.astimezone(timezone.utc)
    return values


async def get_edit(conn, edit_id: int) -> RideEdit:
    row = (await conn.execute(select(models.ride_edits).where(models.ride_edits.c.id == edit_id))).first()
    if not row:
        raise NotFound(f"edit {edit_id} not found", edit_id=edit_id)
    return _row_to_edit(row)


async def pending_edit(conn, ride_id: int) -> Optional[RideEdit]:
    sel = select(models.ride_edits).where(and_(
        models.ride_edits.c.ride_id == ride_id,
        models.ride_edits.c.status == models.EDIT_PENDING,
    ))
    row = (await conn.execute(sel)).first()
    return _row_to_edit(row) if row else None


async def list_edits(conn, ride_id: int) -> List[RideEdit]:
    sel = (
        select(models.ride_edits)
        .where(models.ride_edits.c.ride_id == ride_id)
        .order_by(models.ride_edits.c.created_at, models.ride_edits.c.id)
    )
    return [_row_to_edit(r) for r in (await conn.execute(sel)).all()]


async def propose(
    conn,
    ride_id: int,
    proposed_data: dict,
    request_notes: Optional[str] = None,
    requested_by: Optional[int] = None,
) -> RideEdit:
    proposal = _clean_proposal(proposed_data)
    ride = await rides.get_ride(conn, ride_id, for_update=True)
    if ride.status == models.RIDE_EDIT_PENDING or await pending_edit(conn, ride_id):
        raise EditAlreadyPending(f"ride {ride_id} already has a pending edit", ride_id=ride_id)
    if ride.status not in models.EDITABLE_STATUSES:
        raise InvalidTransition(models.RIDE_EDIT_PENDING, ride.status, f"ride {ride_id} cannot be edited while {ride.status}")

    res = await conn.execute(
        insert(models.ride_edits).returning(models.ride_edits.c.id).values(
            ride_id=ride_id,
            requested_by=requested_by,
            status=models.EDIT_PENDING,
            original_data=itinerary_of(ride),
            proposed_data=proposal,
            prior_status=ride.status,
            prior_final_price=ride.final_price,
            request_notes=request_notes,
            created_at=utcnow(),
        )
    )
    edit = await get_edit(conn, res.scalar_one())
    await rides.enter_edit_pending(conn, ride)
    logger.info("edit_proposed: edit=%s ride=%s fields=%s", edit.id, ride_id, sorted(proposal))
    return edit


async def respond(conn, edit_id: int, accept: bool, response_notes: Optional[str] = None) -> RideEdit:
    edit = await get_edit(conn, edit_id)
    if edit.status != models.EDIT_PENDING:
        raise EditNotPending(f"edit {edit_id} was already {edit.status}", edit_id=edit_id)

    new_status = models.EDIT_ACCEPTED if accept else models.EDIT_REJECTED
    res = await conn.execute(
        update(models.ride_edits)
        .where(and_(models.ride_edits.c.id == edit_id, models.ride_edits.c.status == models.EDIT_PENDING))
        .values(status=new_status, response_notes=response_notes, responded_at=utcnow())
    )
    if res.rowcount == 0:
        raise EditNotPending(f"edit {edit_id} is no longer pending", edit_id=edit_id)

    ride = await rides.get_ride(conn, edit.ride_id, for_update=True)
    changes = _to_columns(edit.proposed_data) if accept else None
    await rides.restore_after_edit(conn, ride, edit.prior_status, edit.prior_final_price, changes)
    logger.info("edit_%s: edit=%s ride=%s restored=%s", new_status, edit_id, edit.ride_id, edit.prior_status)
    return await get_edit(conn, edit_id)
