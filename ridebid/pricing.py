"""Price computation for rides.

Both functions here are pure: they read the ride snapshot and the
``PricingSettings`` they are handed and touch nothing else. Callers load the
current settings for every call.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from zoneinfo import ZoneInfo

from . import models
from .schemas import Bid, PricingSettings, Ride

NIGHT_START_HOUR = 22
NIGHT_END_HOUR = 6


def round_money(amount: float) -> float:
    """Round half-up to cents (2.345 -> 2.35), not banker's rounding."""
    return float(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _local_time(when: datetime, settings: PricingSettings) -> datetime:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(ZoneInfo(settings.timezone))


def is_nighttime(when: datetime, settings: PricingSettings) -> bool:
    hour = _local_time(when, settings).hour
    return hour >= NIGHT_START_HOUR or hour < NIGHT_END_HOUR


def is_weekend(when: datetime, settings: PricingSettings) -> bool:
    return _local_time(when, settings).weekday() >= 5


def accessibility_premium(ride: Ride, settings: PricingSettings) -> float:
    premium = 0.0
    if ride.vehicle_type == models.VEHICLE_WHEELCHAIR:
        premium += settings.wheelchair_surcharge
    elif ride.vehicle_type == models.VEHICLE_STRETCHER:
        premium += settings.stretcher_surcharge
    if ride.needs_ramp:
        premium += settings.ramp_fee
    if ride.needs_companion:
        premium += settings.companion_fee
    if ride.needs_stair_chair:
        premium += settings.stair_chair_fee
    if ride.needs_wait_time and ride.wait_time_minutes:
        premium += settings.base_waiting_rate_per_minute * ride.wait_time_minutes
    return premium


def estimate_from_distance(ride: Ride, distance_miles: float, settings: PricingSettings) -> float:
    """Distance-based estimate with time-of-day, weekend and surge multipliers."""
    base = settings.base_price_per_mile * distance_miles
    if is_nighttime(ride.scheduled_time, settings):
        base *= settings.nighttime_multiplier
    if is_weekend(ride.scheduled_time, settings):
        base *= settings.weekend_multiplier
    base *= settings.surge_factor

    price = base + accessibility_premium(ride, settings)
    if ride.is_round_trip:
        price *= settings.round_trip_multiplier
    return round_money(price)


def compute_price(ride: Ride, settings: PricingSettings, highest_bid: Optional[Bid] = None) -> Optional[float]:
    """Price to show for ``ride``.

    Checked in order: the locked final price, the highest live bid, the
    rider's own bid, then a distance estimate. Returns None when none of
    them is available; 0.0 is a real price and is never used as a marker.
    """
    if ride.final_price is not None:
        return ride.final_price
    if highest_bid is not None and highest_bid.status in models.LIVE_BID_STATUSES:
        return highest_bid.amount
    if ride.rider_bid is not None and ride.rider_bid > 0:
        return ride.rider_bid
    if ride.estimated_distance is not None:
        return estimate_from_distance(ride, ride.estimated_distance, settings)
    return None


def is_late_cancellation(ride: Ride, now: datetime, settings: PricingSettings) -> bool:
    scheduled = ride.scheduled_time
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return scheduled - now < timedelta(hours=settings.late_cancellation_window_hours)


def compute_cancellation_fee(ride: Ride, now: datetime, settings: PricingSettings) -> float:
    """Flat fee when the ride starts within the late-cancellation window, else 0."""
    if is_late_cancellation(ride, now, settings):
        return settings.cancellation_fee
    return 0.0
