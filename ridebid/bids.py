from dataclasses import dataclass
from typing import Dict, List, Optional
import logging
import math

from sqlalchemy import select, insert, update, and_

from . import models
from .errors import (
    AlreadyAssigned,
    BidTerminal,
    DuplicateBid,
    InvalidTransition,
    NegotiationDepthExceeded,
    NotFound,
    ValidationError,
)
from .models import utcnow
from .schemas import Bid, Ride

logger = logging.getLogger(__name__)

# statuses closed by an acceptance or cancellation
OPEN_BID_STATUSES = (models.BID_ACTIVE, models.BID_SELECTED, models.BID_COUNTERED)


@dataclass
class CounterResult:
    bid: Bid
    max_reached: bool = False


def _row_to_bid(row) -> Bid:
    return Bid.model_validate(dict(row._mapping))


def _validate_amount(amount: float):
    if amount is None or not math.isfinite(amount) or amount <= 0:
        raise ValidationError("bid amount must be a positive number", amount=amount)


def _require_open_ride(ride: Ride):
    if ride.status not in models.OPEN_FOR_BIDS:
        raise InvalidTransition(models.RIDE_BIDDING, ride.status, f"ride {ride.id} is not open for bidding")


async def get_bid(conn, bid_id: int) -> Bid:
    row = (await conn.execute(select(models.bids).where(models.bids.c.id == bid_id))).first()
    if not row:
        raise NotFound(f"bid {bid_id} not found", bid_id=bid_id)
    return _row_to_bid(row)


async def bids_for_ride(conn, ride_id: int, statuses=None) -> List[Bid]:
    sel = select(models.bids).where(models.bids.c.ride_id == ride_id)
    if statuses:
        sel = sel.where(models.bids.c.status.in_(statuses))
    sel = sel.order_by(models.bids.c.created_at, models.bids.c.id)
    return [_row_to_bid(r) for r in (await conn.execute(sel)).all()]


async def highest_live_bid(conn, ride_id: int) -> Optional[Bid]:
    sel = (
        select(models.bids)
        .where(and_(models.bids.c.ride_id == ride_id, models.bids.c.status.in_(models.LIVE_BID_STATUSES)))
        .order_by(models.bids.c.amount.desc(), models.bids.c.id)
        .limit(1)
    )
    row = (await conn.execute(sel)).first()
    return _row_to_bid(row) if row else None


async def has_accepted_bid(conn, ride_id: int) -> bool:
    sel = select(models.bids.c.id).where(
        and_(models.bids.c.ride_id == ride_id, models.bids.c.status == models.BID_ACCEPTED)
    )
    return (await conn.execute(sel)).first() is not None


async def _insert_bid(conn, **values) -> Bid:
    res = await conn.execute(
        insert(models.bids).returning(models.bids.c.id).values(created_at=utcnow(), **values)
    )
    return await get_bid(conn, res.scalar_one())


async def _set_status(conn, bid: Bid, status: str) -> Bid:
    res = await conn.execute(
        update(models.bids)
        .where(and_(models.bids.c.id == bid.id, models.bids.c.status == bid.status))
        .values(status=status)
    )
    if res.rowcount == 0:
        raise BidTerminal(f"bid {bid.id} changed while updating", bid_id=bid.id)
    return await get_bid(conn, bid.id)


async def place_bid(conn, ride: Ride, driver_id: int, amount: float, notes: Optional[str] = None) -> Bid:
    _validate_amount(amount)
    _require_open_ride(ride)
    existing = await conn.execute(
        select(models.bids.c.id).where(and_(
            models.bids.c.ride_id == ride.id,
            models.bids.c.driver_id == driver_id,
            models.bids.c.status.in_(models.LIVE_BID_STATUSES),
        ))
    )
    if existing.first():
        raise DuplicateBid(
            "driver already has a live bid on this ride; counter or withdraw it first",
            ride_id=ride.id, driver_id=driver_id,
        )
    bid = await _insert_bid(
        conn,
        ride_id=ride.id,
        driver_id=driver_id,
        amount=amount,
        notes=notes,
        status=models.BID_ACTIVE,
        counter_party=models.PARTY_DRIVER,
        round=1,
    )
    logger.info("bid_placed: bid=%s ride=%s driver=%s amount=%.2f", bid.id, ride.id, driver_id, amount)
    return bid


async def counter_offer(
    conn,
    ride: Ride,
    parent_bid_id: int,
    proposed_by: str,
    amount: float,
    notes: Optional[str] = None,
    max_rounds: int = 5,
) -> CounterResult:
    _validate_amount(amount)
    if proposed_by not in (models.PARTY_RIDER, models.PARTY_DRIVER):
        raise ValidationError(f"unknown counter party {proposed_by!r}")
    parent = await get_bid(conn, parent_bid_id)
    if parent.ride_id != ride.id:
        raise ValidationError(f"bid {parent.id} does not belong to ride {ride.id}")
    _require_open_ride(ride)

    if parent.status == models.BID_MAX_REACHED or await _has_max_reached_child(conn, parent.id):
        raise NegotiationDepthExceeded(
            f"negotiation on bid {parent.id} reached its limit of {max_rounds} rounds", bid_id=parent.id,
        )
    if parent.status not in models.LIVE_BID_STATUSES:
        raise BidTerminal(f"bid {parent.id} is {parent.status} and cannot be countered", bid_id=parent.id)

    next_round = parent.round + 1
    values = dict(
        ride_id=parent.ride_id,
        driver_id=parent.driver_id,
        amount=amount,
        notes=notes,
        parent_bid_id=parent.id,
        counter_party=proposed_by,
        round=next_round,
    )
    # past the limit the parent stays live and keeps its amount acceptable
    if next_round > max_rounds:
        bid = await _insert_bid(conn, status=models.BID_MAX_REACHED, **values)
        logger.info("counter_max_reached: bid=%s parent=%s round=%s", bid.id, parent.id, next_round)
        return CounterResult(bid=bid, max_reached=True)

    await _set_status(conn, parent, models.BID_COUNTERED)
    bid = await _insert_bid(conn, status=models.BID_ACTIVE, **values)
    logger.info(
        "counter_offer: bid=%s parent=%s by=%s amount=%.2f round=%s",
        bid.id, parent.id, proposed_by, amount, next_round,
    )
    return CounterResult(bid=bid)


async def _has_max_reached_child(conn, bid_id: int) -> bool:
    sel = select(models.bids.c.id).where(and_(
        models.bids.c.parent_bid_id == bid_id,
        models.bids.c.status == models.BID_MAX_REACHED,
    ))
    return (await conn.execute(sel)).first() is not None


async def accept_bid(conn, bid_id: int) -> Bid:
    """Accept one bid and reject every other open bid on its ride."""
    bid = await get_bid(conn, bid_id)
    if await has_accepted_bid(conn, bid.ride_id):
        raise AlreadyAssigned(f"ride {bid.ride_id} already has an accepted bid", ride_id=bid.ride_id)
    if bid.status not in models.LIVE_BID_STATUSES:
        raise BidTerminal(f"bid {bid.id} is {bid.status} and cannot be accepted", bid_id=bid.id)

    accepted = await _set_status(conn, bid, models.BID_ACCEPTED)
    await conn.execute(
        update(models.bids)
        .where(and_(
            models.bids.c.ride_id == bid.ride_id,
            models.bids.c.id != bid.id,
            models.bids.c.status.in_(OPEN_BID_STATUSES),
        ))
        .values(status=models.BID_REJECTED)
    )
    logger.info("bid_accepted: bid=%s ride=%s driver=%s amount=%.2f", bid.id, bid.ride_id, bid.driver_id, bid.amount)
    return accepted


async def mark_selected(conn, bid_id: int) -> Bid:
    bid = await get_bid(conn, bid_id)
    if bid.status == models.BID_SELECTED:
        return bid
    if bid.status != models.BID_ACTIVE:
        raise BidTerminal(f"bid {bid.id} is {bid.status} and cannot be selected", bid_id=bid.id)
    selected = await _set_status(conn, bid, models.BID_SELECTED)
    logger.info("bid_selected: bid=%s ride=%s", bid.id, bid.ride_id)
    return selected


async def withdraw_bid(conn, bid_id: int, driver_id: int) -> Bid:
    """Withdraw the driver's whole negotiation chain on the bid's ride."""
    bid = await get_bid(conn, bid_id)
    if bid.driver_id != driver_id:
        raise ValidationError(f"bid {bid.id} does not belong to driver {driver_id}", bid_id=bid.id)
    if bid.status not in OPEN_BID_STATUSES:
        raise BidTerminal(f"bid {bid.id} is {bid.status} and cannot be withdrawn", bid_id=bid.id)
    await conn.execute(
        update(models.bids)
        .where(and_(
            models.bids.c.ride_id == bid.ride_id,
            models.bids.c.driver_id == driver_id,
            models.bids.c.status.in_(OPEN_BID_STATUSES),
        ))
        .values(status=models.BID_WITHDRAWN)
    )
    logger.info("bid_withdrawn: bid=%s ride=%s driver=%s", bid.id, bid.ride_id, driver_id)
    return await get_bid(conn, bid.id)


async def close_open_bids(conn, ride_id: int) -> List[Bid]:
    """Reject every open bid on a ride; returns the bids as they were."""
    open_bids = await bids_for_ride(conn, ride_id, statuses=OPEN_BID_STATUSES)
    if open_bids:
        await conn.execute(
            update(models.bids)
            .where(and_(models.bids.c.ride_id == ride_id, models.bids.c.status.in_(OPEN_BID_STATUSES)))
            .values(status=models.BID_REJECTED)
        )
        logger.info("bids_closed: ride=%s count=%s", ride_id, len(open_bids))
    return open_bids


async def history(conn, bid_id: Optional[int] = None, ride_id: Optional[int] = None) -> List[Bid]:
    """The chain containing ``bid_id``, or every bid on ``ride_id``."""
    if bid_id is None and ride_id is None:
        raise ValidationError("history needs a bid_id or a ride_id")
    if bid_id is None:
        return await bids_for_ride(conn, ride_id)

    bid = await get_bid(conn, bid_id)
    ride_bids = await bids_for_ride(conn, bid.ride_id)
    by_id: Dict[int, Bid] = {b.id: b for b in ride_bids}

    def root_of(b: Bid) -> int:
        while b.parent_bid_id is not None and b.parent_bid_id in by_id:
            b = by_id[b.parent_bid_id]
        return b.id

    root = root_of(bid)
    return [b for b in ride_bids if root_of(b) == root]
