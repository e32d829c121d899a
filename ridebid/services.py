from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
import logging

import pydantic
from sqlalchemy import select, insert, update, and_

from . import bids, db, edits, models, pricing, rides
from .bids import CounterResult
from .config import settings
from .distance import DistanceProvider, coordinate
from .errors import (
    AlreadyAssigned,
    InvalidTransition,
    PaymentDeclined,
    PaymentMethodRequired,
    PaymentVerificationRequired,
    ValidationError,
)
from .locks import RideLocks
from .models import utcnow
from .notifications import Notifier
from .payments import PaymentGateway, default_gateway
from .schemas import Bid, PricingSettings, Ride, RideCreate, RideEdit

logger = logging.getLogger(__name__)


@dataclass
class AcceptOutcome:
    ride: Ride
    bid: Bid
    payment_status: Optional[str] = None


@dataclass
class CancellationOutcome:
    ride: Ride
    fee: float
    late: bool
    reliability_flag: bool


def payment_key(ride_id: int, amount: float) -> str:
    return f"ride-{ride_id}-{int(round(amount * 100))}"


class Marketplace:
    def __init__(
        self,
        engine=None,
        payments: Optional[PaymentGateway] = None,
        distance: Optional[DistanceProvider] = None,
        notifier: Optional[Notifier] = None,
        locks: Optional[RideLocks] = None,
        max_rounds: Optional[int] = None,
        payment_max_attempts: Optional[int] = None,
        collect_payment_on_accept: Optional[bool] = None,
        market: Optional[str] = None,
        pricing_defaults: Optional[dict] = None,
    ):
        self.engine = engine or db.engine
        self.payments = payments or default_gateway()
        self.distance = distance or DistanceProvider()
        self.notifier = notifier or Notifier()
        self.locks = locks or RideLocks()
        self.market_locks = RideLocks()
        self.max_rounds = max_rounds or settings.MAX_NEGOTIATION_ROUNDS
        self.payment_max_attempts = payment_max_attempts or settings.PAYMENT_MAX_ATTEMPTS
        self.collect_payment_on_accept = (
            settings.COLLECT_PAYMENT_ON_ACCEPT if collect_payment_on_accept is None else collect_payment_on_accept
        )
        self.market = market or settings.DEFAULT_MARKET
        self.pricing_defaults = dict(settings.PRICING_DEFAULTS if pricing_defaults is None else pricing_defaults)

    # ===================== Rides =====================

    async def request_ride(self, req: RideCreate, idempotency_key: Optional[str] = None) -> Ride:
        if idempotency_key:
            async with self.engine.connect() as conn:
                sel = select(models.idempotency_keys).where(models.idempotency_keys.c.key == idempotency_key)
                ex = (await conn.execute(sel)).first()
            if ex and ex._mapping["response"]:
                logger.info("request_ride_replayed: key=%s", idempotency_key)
                return Ride.model_validate(ex._mapping["response"])

        miles = await self.distance.distance_miles(
            coordinate(req.pickup_lat, req.pickup_lng), coordinate(req.dropoff_lat, req.dropoff_lng)
        )
        async with self.engine.begin() as conn:
            ride = await rides.create_ride(conn, req, estimated_distance=miles)
            if idempotency_key:
                await conn.execute(
                    insert(models.idempotency_keys).values(
                        key=idempotency_key, response=ride.model_dump(mode="json"), created_at=utcnow()
                    )
                )
        return ride

    async def get_ride(self, ride_id: int) -> Ride:
        async with self.engine.connect() as conn:
            return await rides.get_ride(conn, ride_id)

    async def list_rides(self, **filters) -> List[Ride]:
        async with self.engine.connect() as conn:
            return await rides.list_rides(conn, **filters)

    async def advance_ride_status(self, ride_id: int, next_status: str, driver_id: Optional[int] = None) -> Ride:
        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                ride = await rides.get_ride(conn, ride_id, for_update=True)
                ride = await rides.advance(conn, ride, next_status, driver_id=driver_id)
        self.notifier.notify(ride.rider_id, "ride_status_changed", {"ride_id": ride.id, "status": ride.status})
        return ride

    async def cancel_ride(
        self,
        ride_id: int,
        initiator: str,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> CancellationOutcome:
        if initiator not in (models.PARTY_RIDER, models.PARTY_DRIVER):
            raise ValidationError(f"unknown cancellation initiator {initiator!r}")
        now = now or datetime.now(timezone.utc)

        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                ride = await rides.get_ride(conn, ride_id, for_update=True)
                await self._require_no_charge_in_flight(conn, ride, models.RIDE_CANCELLED)
                late = False
                fee = 0.0
                if ride.driver_id is not None and ride.status in models.CANCELLABLE_STATUSES:
                    price_settings = await self._load_pricing(conn)
                    late = pricing.is_late_cancellation(ride, now, price_settings)
                    if initiator == models.PARTY_RIDER:
                        fee = pricing.compute_cancellation_fee(ride, now, price_settings)
                former_driver = ride.driver_id
                cancelled = await rides.cancel(conn, ride, initiator, fee, late)
                closed = await bids.close_open_bids(conn, ride_id)

        logger.info(
            "ride_cancelled: ride=%s by=%s late=%s fee=%.2f reason=%s",
            ride_id, initiator, late, fee, reason,
        )
        payload = {"ride_id": ride_id, "cancelled_by": initiator, "late": late, "reason": reason}
        if initiator == models.PARTY_RIDER:
            self.notifier.notify(former_driver, "ride_cancelled", payload)
        else:
            self.notifier.notify(cancelled.rider_id, "ride_cancelled", payload)
        for driver_id in {b.driver_id for b in closed} - {former_driver}:
            self.notifier.notify(driver_id, "ride_cancelled", payload)
        return CancellationOutcome(
            ride=cancelled, fee=fee, late=late, reliability_flag=cancelled.driver_reliability_flag,
        )

    # ===================== Bids =====================

    async def submit_bid(self, ride_id: int, driver_id: int, amount: float, notes: Optional[str] = None) -> Bid:
        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                ride = await rides.get_ride(conn, ride_id, for_update=True)
                bid = await bids.place_bid(conn, ride, driver_id, amount, notes)
                await rides.start_bidding(conn, ride)
        self.notifier.notify(ride.rider_id, "new_bid", {"ride_id": ride_id, "bid_id": bid.id, "amount": bid.amount})
        return bid

    async def submit_counter(self, bid_id: int, proposed_by: str, amount: float, notes: Optional[str] = None) -> CounterResult:
        ride_id = (await self.get_bid(bid_id)).ride_id
        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                ride = await rides.get_ride(conn, ride_id, for_update=True)
                result = await bids.counter_offer(
                    conn, ride, bid_id, proposed_by, amount, notes, max_rounds=self.max_rounds,
                )

        bid = result.bid
        payload = {"ride_id": ride_id, "bid_id": bid.id, "parent_bid_id": bid_id, "amount": bid.amount}
        if result.max_reached:
            for user_id in (ride.rider_id, bid.driver_id):
                self.notifier.notify(user_id, "negotiation_max_reached", payload)
        elif proposed_by == models.PARTY_RIDER:
            self.notifier.notify(bid.driver_id, "counter_offer", payload)
        else:
            self.notifier.notify(ride.rider_id, "counter_offer", payload)
        return result

    async def select_bid(self, bid_id: int) -> Bid:
        ride_id = (await self.get_bid(bid_id)).ride_id
        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                bid = await bids.mark_selected(conn, bid_id)
        self.notifier.notify(bid.driver_id, "bid_selected", {"ride_id": ride_id, "bid_id": bid.id})
        return bid

    async def withdraw_bid(self, bid_id: int, driver_id: int) -> Bid:
        ride_id = (await self.get_bid(bid_id)).ride_id
        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                ride = await rides.get_ride(conn, ride_id, for_update=True)
                bid = await bids.withdraw_bid(conn, bid_id, driver_id)
        self.notifier.notify(ride.rider_id, "bid_withdrawn", {"ride_id": ride_id, "bid_id": bid.id})
        return bid

    async def get_bid(self, bid_id: int) -> Bid:
        async with self.engine.connect() as conn:
            return await bids.get_bid(conn, bid_id)

    async def bid_history(self, bid_id: Optional[int] = None, ride_id: Optional[int] = None) -> List[Bid]:
        async with self.engine.connect() as conn:
            return await bids.history(conn, bid_id=bid_id, ride_id=ride_id)

    async def accept_bid(self, bid_id: int, accepted_by: Optional[int] = None) -> AcceptOutcome:
        """Payment errors are raised after the acceptance has committed."""
        bid = await self.get_bid(bid_id)
        ride = await self.get_ride(bid.ride_id)
        if accepted_by is not None:
            # the party that did not propose it, or the driver confirming a selected bid
            expected = ride.rider_id if bid.counter_party == models.PARTY_DRIVER else bid.driver_id
            confirming = bid.status == models.BID_SELECTED and accepted_by == bid.driver_id
            if accepted_by != expected and not confirming:
                raise ValidationError(f"user {accepted_by} cannot accept bid {bid_id}", bid_id=bid_id)
        if self.collect_payment_on_accept and not await self.payments.has_payment_method(ride.rider_id):
            raise PaymentMethodRequired("add a payment method before accepting bids", ride_id=ride.id)

        status = models.RIDE_PAYMENT_PENDING if self.collect_payment_on_accept else models.RIDE_SCHEDULED
        async with self.locks.hold(ride.id):
            async with self.engine.begin() as conn:
                ride = await rides.get_ride(conn, ride.id, for_update=True)
                if ride.driver_id is not None:
                    raise AlreadyAssigned(f"ride {ride.id} is already assigned", ride_id=ride.id, current=ride.status)
                competing = await bids.bids_for_ride(conn, ride.id, statuses=bids.OPEN_BID_STATUSES)
                accepted = await bids.accept_bid(conn, bid_id)
                ride = await rides.assign_driver(conn, ride, accepted, status=status)

        logger.info("accept_bid: ride=%s bid=%s driver=%s price=%.2f", ride.id, bid_id, ride.driver_id, ride.final_price)
        self.notifier.notify(accepted.driver_id, "bid_accepted", {"ride_id": ride.id, "bid_id": bid_id, "amount": accepted.amount})
        self.notifier.notify(ride.rider_id, "ride_assigned", {"ride_id": ride.id, "driver_id": ride.driver_id})
        for driver_id in {b.driver_id for b in competing} - {accepted.driver_id}:
            self.notifier.notify(driver_id, "bid_rejected", {"ride_id": ride.id})

        if not self.collect_payment_on_accept:
            return AcceptOutcome(ride=ride, bid=accepted)
        ride = await self.collect_payment(ride.id)
        return AcceptOutcome(ride=ride, bid=accepted, payment_status=models.PAY_SUCCESS)

    async def confirm_selected_bid(self, bid_id: int, driver_id: int) -> AcceptOutcome:
        bid = await self.get_bid(bid_id)
        if bid.driver_id != driver_id:
            raise ValidationError(f"bid {bid_id} does not belong to driver {driver_id}", bid_id=bid_id)
        if bid.status != models.BID_SELECTED:
            raise ValidationError(f"bid {bid_id} must be selected by the rider first", bid_id=bid_id)
        return await self.accept_bid(bid_id, accepted_by=driver_id)

    # ===================== Payments =====================

    async def collect_payment(self, ride_id: int) -> Ride:
        ride = await self.get_ride(ride_id)
        if ride.status == models.RIDE_PAID:
            return ride
        if ride.status not in (models.RIDE_SCHEDULED, models.RIDE_PAYMENT_PENDING):
            raise InvalidTransition(models.RIDE_PAID, ride.status)
        if not await self.payments.has_payment_method(ride.rider_id):
            raise PaymentMethodRequired("add a payment method to pay for this ride", ride_id=ride_id)

        key = payment_key(ride.id, ride.final_price)
        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                ride = await rides.get_ride(conn, ride_id, for_update=True)
                if ride.status == models.RIDE_SCHEDULED:
                    ride = await rides.mark_payment_pending(conn, ride)
                if ride.status != models.RIDE_PAYMENT_PENDING:
                    raise InvalidTransition(models.RIDE_PAID, ride.status)
                payment = await self._payment_row(conn, ride, key)
                if payment["status"] == models.PAY_SUCCESS:
                    # charged earlier but the ride never got marked
                    logger.info("collect_payment_recovered: ride=%s key=%s", ride_id, key)
                    return await rides.mark_paid(conn, ride)
                if payment["attempts"] >= self.payment_max_attempts:
                    raise PaymentDeclined(
                        "payment attempt limit reached",
                        decline_reason="attempt_limit",
                        retryable=False,
                        ride_id=ride_id,
                        attempts=payment["attempts"],
                    )
                attempts = payment["attempts"] + 1
                await conn.execute(
                    update(models.payments)
                    .where(models.payments.c.idempotency_key == key)
                    .values(attempts=attempts, status=models.PAY_PENDING, updated_at=utcnow())
                )

        logger.info("collect_payment: ride=%s amount=%.2f attempt=%s", ride_id, ride.final_price, attempts)
        result = await self.payments.charge(ride.rider_id, ride.final_price, key)

        if result.success:
            pay_status = models.PAY_SUCCESS
        elif result.requires_action:
            pay_status = models.PAY_REQUIRES_ACTION
        else:
            pay_status = models.PAY_FAILED
        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                await conn.execute(
                    update(models.payments)
                    .where(models.payments.c.idempotency_key == key)
                    .values(
                        status=pay_status,
                        decline_reason=result.decline_reason,
                        provider_response={"reference": result.reference, **result.raw},
                        updated_at=utcnow(),
                    )
                )
                ride = await rides.get_ride(conn, ride_id, for_update=True)
                if result.success and ride.status == models.RIDE_PAYMENT_PENDING:
                    ride = await rides.mark_paid(conn, ride)
                elif result.success:
                    logger.warning("payment_succeeded_out_of_band: ride=%s status=%s key=%s", ride_id, ride.status, key)

        if result.success:
            self.notifier.notify(ride.rider_id, "payment_succeeded", {"ride_id": ride_id, "amount": ride.final_price})
            return ride

        self.notifier.notify(ride.rider_id, "payment_failed", {"ride_id": ride_id, "reason": result.decline_reason})
        logger.warning("payment_failed: ride=%s status=%s reason=%s attempt=%s", ride_id, pay_status, result.decline_reason, attempts)
        if result.requires_action:
            raise PaymentVerificationRequired("payment needs additional verification", ride_id=ride_id)
        raise PaymentDeclined(
            "payment was declined",
            decline_reason=result.decline_reason,
            retryable=attempts < self.payment_max_attempts,
            ride_id=ride_id,
            attempts=attempts,
        )

    async def _payment_row(self, conn, ride: Ride, key: str) -> dict:
        sel = select(models.payments).where(models.payments.c.idempotency_key == key)
        row = (await conn.execute(sel)).first()
        if row:
            return dict(row._mapping)
        now = utcnow()
        await conn.execute(
            insert(models.payments).values(
                ride_id=ride.id,
                rider_id=ride.rider_id,
                amount=ride.final_price,
                idempotency_key=key,
                status=models.PAY_PENDING,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
        )
        return dict((await conn.execute(sel)).first()._mapping)

    async def _require_no_charge_in_flight(self, conn, ride: Ride, attempted: str):
        # collect_payment marks the row pending with a new attempt before it calls the gateway
        sel = select(models.payments.c.id).where(and_(
            models.payments.c.ride_id == ride.id,
            models.payments.c.status == models.PAY_PENDING,
            models.payments.c.attempts > 0,
        ))
        if (await conn.execute(sel)).first():
            raise InvalidTransition(attempted, ride.status, f"a payment for ride {ride.id} is being processed")

    # ===================== Edits =====================

    async def propose_edit(
        self,
        ride_id: int,
        proposed_data: dict,
        request_notes: Optional[str] = None,
        requested_by: Optional[int] = None,
    ) -> RideEdit:
        ride = await self.get_ride(ride_id)
        if requested_by is not None and requested_by != ride.rider_id:
            raise ValidationError(f"only the rider can edit ride {ride_id}", ride_id=ride_id)

        proposal = dict(proposed_data)
        if any(f in proposal for f in ("pickup_lat", "pickup_lng", "dropoff_lat", "dropoff_lng")):
            origin = coordinate(proposal.get("pickup_lat", ride.pickup_lat), proposal.get("pickup_lng", ride.pickup_lng))
            destination = coordinate(proposal.get("dropoff_lat", ride.dropoff_lat), proposal.get("dropoff_lng", ride.dropoff_lng))
            proposal["estimated_distance"] = await self.distance.distance_miles(origin, destination)

        async with self.locks.hold(ride_id):
            async with self.engine.begin() as conn:
                current = await rides.get_ride(conn, ride_id, for_update=True)
                await self._require_no_charge_in_flight(conn, current, models.RIDE_EDIT_PENDING)
                edit = await edits.propose(conn, ride_id, proposal, request_notes, requested_by)
        self.notifier.notify(ride.driver_id, "edit_requested", {"ride_id": ride_id, "edit_id": edit.id})
        return edit

    async def respond_to_edit(
        self,
        edit_id: int,
        accept: bool,
        response_notes: Optional[str] = None,
        responded_by: Optional[int] = None,
    ) -> RideEdit:
        async with self.engine.connect() as conn:
            edit = await edits.get_edit(conn, edit_id)
            ride = await rides.get_ride(conn, edit.ride_id)
        if responded_by is not None and responded_by != ride.driver_id:
            raise ValidationError(f"only the assigned driver can answer edit {edit_id}", edit_id=edit_id)

        async with self.locks.hold(ride.id):
            async with self.engine.begin() as conn:
                edit = await edits.respond(conn, edit_id, accept, response_notes)
        self.notifier.notify(
            ride.rider_id,
            "edit_accepted" if accept else "edit_rejected",
            {"ride_id": ride.id, "edit_id": edit_id, "notes": response_notes},
        )
        return edit

    async def list_edits(self, ride_id: int) -> List[RideEdit]:
        async with self.engine.connect() as conn:
            await rides.get_ride(conn, ride_id)
            return await edits.list_edits(conn, ride_id)

    # ===================== Pricing =====================

    async def quote_price(self, ride_id: int) -> Optional[float]:
        async with self.engine.connect() as conn:
            ride = await rides.get_ride(conn, ride_id)
            highest = await bids.highest_live_bid(conn, ride_id)
            price_settings = await self._load_pricing(conn)
        return pricing.compute_price(ride, price_settings, highest_bid=highest)

    async def _load_pricing(self, conn, market: Optional[str] = None, for_update: bool = False) -> PricingSettings:
        sel = select(models.pricing_settings).where(models.pricing_settings.c.market == (market or self.market))
        if for_update:
            sel = sel.with_for_update()
        row = (await conn.execute(sel)).first()
        stored = row._mapping["data"] if row else None
        return PricingSettings(**{**self.pricing_defaults, **(stored or {})})

    async def get_pricing_settings(self, market: Optional[str] = None) -> PricingSettings:
        async with self.engine.connect() as conn:
            return await self._load_pricing(conn, market)

    async def update_pricing_settings(self, changes: dict, market: Optional[str] = None) -> PricingSettings:
        market = market or self.market
        async with self.market_locks.hold(market), self.engine.begin() as conn:
            current = await self._load_pricing(conn, market, for_update=True)
            try:
                updated = PricingSettings.model_validate({**current.model_dump(), **changes})
            except pydantic.ValidationError as e:
                raise ValidationError(f"invalid pricing settings: {e.errors()[0]['msg']}")
            exists = (await conn.execute(
                select(models.pricing_settings.c.market).where(models.pricing_settings.c.market == market)
            )).first()
            if exists:
                await conn.execute(
                    update(models.pricing_settings)
                    .where(models.pricing_settings.c.market == market)
                    .values(data=updated.model_dump(), updated_at=utcnow())
                )
            else:
                await conn.execute(
                    insert(models.pricing_settings).values(market=market, data=updated.model_dump(), updated_at=utcnow())
                )
        logger.info("pricing_settings_updated: market=%s fields=%s", market, sorted(changes))
        return updated
