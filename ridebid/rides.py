from typing import Optional, List
from uuid import uuid4
import logging

from sqlalchemy import select, insert, update, and_

from . import models
from .errors import AlreadyAssigned, InvalidTransition, NotFound, ValidationError
from .models import utcnow
from .schemas import Bid, Ride, RideCreate

logger = logging.getLogger(__name__)


TRANSITIONS = {
    models.RIDE_REQUESTED: {models.RIDE_BIDDING, models.RIDE_CANCELLED},
    models.RIDE_BIDDING: {models.RIDE_SCHEDULED, models.RIDE_PAYMENT_PENDING, models.RIDE_CANCELLED},
    models.RIDE_SCHEDULED: {
        models.RIDE_PAYMENT_PENDING,
        models.RIDE_PAID,
        models.RIDE_EN_ROUTE,
        models.RIDE_EDIT_PENDING,
        models.RIDE_CANCELLED,
    },
    models.RIDE_PAYMENT_PENDING: {models.RIDE_PAID, models.RIDE_EDIT_PENDING, models.RIDE_CANCELLED},
    models.RIDE_PAID: {models.RIDE_EN_ROUTE, models.RIDE_EDIT_PENDING, models.RIDE_CANCELLED},
    models.RIDE_EN_ROUTE: {models.RIDE_ARRIVED, models.RIDE_EDIT_PENDING},
    models.RIDE_ARRIVED: {models.RIDE_IN_PROGRESS, models.RIDE_EDIT_PENDING},
    models.RIDE_IN_PROGRESS: {models.RIDE_COMPLETED, models.RIDE_EDIT_PENDING},
    models.RIDE_EDIT_PENDING: set(models.EDITABLE_STATUSES),
    models.RIDE_COMPLETED: set(),
    models.RIDE_CANCELLED: set(),
}

# driver milestones and the statuses each one may follow
DRIVER_STEPS = {
    models.RIDE_EN_ROUTE: {models.RIDE_SCHEDULED, models.RIDE_PAID},
    models.RIDE_ARRIVED: {models.RIDE_EN_ROUTE},
    models.RIDE_IN_PROGRESS: {models.RIDE_ARRIVED},
    models.RIDE_COMPLETED: {models.RIDE_IN_PROGRESS},
}


def _row_to_ride(row) -> Ride:
    return Ride.model_validate(dict(row._mapping))


def _check_invariant(ride: Ride, new_status: str, final_price: Optional[float], driver_id: Optional[int]):
    priced = new_status in models.PRICED_STATUSES
    if priced != (final_price is not None):
        raise InvalidTransition(
            new_status, ride.status,
            f"final price must be {'set' if priced else 'cleared'} when ride is {new_status}",
        )
    if new_status == models.RIDE_EDIT_PENDING:
        if driver_id is None:
            raise InvalidTransition(new_status, ride.status, "edit_pending requires an assigned driver")
    elif (driver_id is not None) != (final_price is not None):
        raise InvalidTransition(new_status, ride.status, "driver and final price must be assigned together")


async def _transition(conn, ride: Ride, new_status: str, **values) -> Ride:
    if new_status not in TRANSITIONS.get(ride.status, ()):
        raise InvalidTransition(new_status, ride.status)
    _check_invariant(
        ride,
        new_status,
        values.get("final_price", ride.final_price),
        values.get("driver_id", ride.driver_id),
    )
    # guarded on the status the caller read
    res = await conn.execute(
        update(models.rides)
        .where(and_(models.rides.c.id == ride.id, models.rides.c.status == ride.status))
        .values(status=new_status, updated_at=utcnow(), **values)
    )
    if res.rowcount == 0:
        current = await get_ride(conn, ride.id)
        logger.warning("ride_transition_conflict: ride=%s expected=%s found=%s", ride.id, ride.status, current.status)
        raise InvalidTransition(new_status, current.status, "ride was modified concurrently")
    logger.info("ride_transition: ride=%s %s->%s", ride.id, ride.status, new_status)
    return await get_ride(conn, ride.id)


async def get_ride(conn, ride_id: int, for_update: bool = False) -> Ride:
    sel = select(models.rides).where(models.rides.c.id == ride_id)
    if for_update:
        sel = sel.with_for_update()
    row = (await conn.execute(sel)).first()
    if not row:
        raise NotFound(f"ride {ride_id} not found", ride_id=ride_id)
    return _row_to_ride(row)


async def list_rides(
    conn,
    rider_id: Optional[int] = None,
    driver_id: Optional[int] = None,
    status: Optional[str] = None,
    open_only: bool = False,
    limit: int = 50,
) -> List[Ride]:
    sel = select(models.rides)
    if rider_id is not None:
        sel = sel.where(models.rides.c.rider_id == rider_id)
    if driver_id is not None:
        sel = sel.where(models.rides.c.driver_id == driver_id)
    if status is not None:
        sel = sel.where(models.rides.c.status == status)
    if open_only:
        sel = sel.where(models.rides.c.status.in_(models.OPEN_FOR_BIDS))
    sel = sel.order_by(models.rides.c.scheduled_time, models.rides.c.id).limit(limit)
    rows = (await conn.execute(sel)).all()
    return [_row_to_ride(r) for r in rows]


async def create_ride(conn, req: RideCreate, estimated_distance: Optional[float] = None) -> Ride:
    now = utcnow()
    res = await conn.execute(
        insert(models.rides).returning(models.rides.c.id).values(
            reference_number=f"RB-{uuid4().hex[:8].upper()}",
            status=models.RIDE_REQUESTED,
            estimated_distance=estimated_distance,
            created_at=now,
            updated_at=now,
            **req.model_dump(),
        )
    )
    ride = await get_ride(conn, res.scalar_one())
    logger.info("ride_created: ride=%s rider=%s vehicle=%s", ride.id, ride.rider_id, ride.vehicle_type)
    # the rider's own offer opens the bidding pool straight away
    if ride.rider_bid:
        ride = await start_bidding(conn, ride)
    return ride


async def start_bidding(conn, ride: Ride) -> Ride:
    if ride.status == models.RIDE_BIDDING:
        return ride
    return await _transition(conn, ride, models.RIDE_BIDDING)


async def assign_driver(conn, ride: Ride, bid: Bid, status: str = models.RIDE_PAYMENT_PENDING) -> Ride:
    """Lock the winning bid's driver and amount onto the ride."""
    if ride.status != models.RIDE_BIDDING:
        if ride.driver_id is not None or ride.status in models.PRICED_STATUSES:
            raise AlreadyAssigned(f"ride {ride.id} is already assigned", ride_id=ride.id, current=ride.status)
        raise InvalidTransition(status, ride.status)
    try:
        return await _transition(conn, ride, status, driver_id=bid.driver_id, final_price=bid.amount)
    except InvalidTransition:
        current = await get_ride(conn, ride.id)
        if current.driver_id is not None:
            raise AlreadyAssigned(f"ride {ride.id} is already assigned", ride_id=ride.id, current=current.status)
        raise


async def mark_payment_pending(conn, ride: Ride) -> Ride:
    if ride.status == models.RIDE_PAYMENT_PENDING:
        return ride
    return await _transition(conn, ride, models.RIDE_PAYMENT_PENDING)


async def mark_paid(conn, ride: Ride) -> Ride:
    return await _transition(conn, ride, models.RIDE_PAID)


async def advance(conn, ride: Ride, next_status: str, driver_id: Optional[int] = None) -> Ride:
    """Driver milestone; each step must directly follow the previous one."""
    if next_status not in DRIVER_STEPS:
        raise InvalidTransition(next_status, ride.status, f"{next_status} is not a driver milestone")
    if driver_id is not None and driver_id != ride.driver_id:
        raise ValidationError(f"ride {ride.id} is not assigned to driver {driver_id}", ride_id=ride.id)
    if ride.status not in DRIVER_STEPS[next_status]:
        raise InvalidTransition(next_status, ride.status)
    return await _transition(conn, ride, next_status)


async def cancel(conn, ride: Ride, initiator: str, fee: float, late: bool) -> Ride:
    if ride.status not in models.CANCELLABLE_STATUSES:
        if ride.status in (models.RIDE_COMPLETED, models.RIDE_CANCELLED):
            raise InvalidTransition(models.RIDE_CANCELLED, ride.status, f"ride is already {ride.status}")
        raise InvalidTransition(models.RIDE_CANCELLED, ride.status)
    return await _transition(
        conn,
        ride,
        models.RIDE_CANCELLED,
        driver_id=None,
        final_price=None,
        cancelled_by=initiator,
        cancelled_driver_id=ride.driver_id,
        cancellation_fee=fee,
        late_cancellation=late,
        driver_reliability_flag=initiator == models.PARTY_DRIVER and late,
    )


async def enter_edit_pending(conn, ride: Ride) -> Ride:
    # the locked price is parked on the edit record until the driver answers
    return await _transition(conn, ride, models.RIDE_EDIT_PENDING, final_price=None)


async def restore_after_edit(conn, ride: Ride, prior_status: str, prior_final_price: Optional[float], changes: Optional[dict] = None) -> Ride:
    if ride.status != models.RIDE_EDIT_PENDING:
        raise InvalidTransition(prior_status, ride.status)
    return await _transition(conn, ride, prior_status, final_price=prior_final_price, **(changes or {}))
