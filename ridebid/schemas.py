from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Literal, Optional
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


VehicleType = Literal["standard", "wheelchair", "stretcher"]
Party = Literal["rider", "driver"]


def _aware(v):
    # everything is stored as UTC; sqlite hands back naive datetimes
    if isinstance(v, datetime):
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)
    return v


class RideCreate(BaseModel):
    rider_id: int = Field(..., gt=0)
    pickup_location: str = Field(..., min_length=1, max_length=500)
    pickup_lat: Optional[float] = Field(None, ge=-90, le=90)
    pickup_lng: Optional[float] = Field(None, ge=-180, le=180)
    dropoff_location: str = Field(..., min_length=1, max_length=500)
    dropoff_lat: Optional[float] = Field(None, ge=-90, le=90)
    dropoff_lng: Optional[float] = Field(None, ge=-180, le=180)
    scheduled_time: datetime
    is_round_trip: bool = False
    vehicle_type: VehicleType = "standard"
    needs_ramp: bool = False
    needs_companion: bool = False
    needs_stair_chair: bool = False
    needs_wait_time: bool = False
    wait_time_minutes: int = Field(0, ge=0, le=24 * 60)
    special_instructions: Optional[str] = Field(None, max_length=2000)
    rider_bid: Optional[float] = Field(None, gt=0)

    @field_validator("scheduled_time")
    @classmethod
    def validate_scheduled_time(cls, v):
        return _aware(v)


class Ride(BaseModel):
    """Read-only snapshot of a ride row."""
    model_config = ConfigDict(frozen=True)

    id: int
    reference_number: Optional[str] = None
    rider_id: int
    driver_id: Optional[int] = None
    pickup_location: str
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    dropoff_location: str
    dropoff_lat: Optional[float] = None
    dropoff_lng: Optional[float] = None
    scheduled_time: datetime
    estimated_distance: Optional[float] = None
    is_round_trip: bool = False
    vehicle_type: VehicleType = "standard"
    needs_ramp: bool = False
    needs_companion: bool = False
    needs_stair_chair: bool = False
    needs_wait_time: bool = False
    wait_time_minutes: int = 0
    special_instructions: Optional[str] = None
    rider_bid: Optional[float] = None
    final_price: Optional[float] = None
    status: str
    cancelled_by: Optional[str] = None
    cancelled_driver_id: Optional[int] = None
    cancellation_fee: Optional[float] = None
    late_cancellation: bool = False
    driver_reliability_flag: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("scheduled_time", "created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v):
        return _aware(v)


class Bid(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    ride_id: int
    driver_id: int
    amount: float
    notes: Optional[str] = None
    status: str
    parent_bid_id: Optional[int] = None
    counter_party: Party = "driver"
    round: int = 1
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v):
        return _aware(v)


class RideEdit(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    ride_id: int
    requested_by: Optional[int] = None
    status: str
    original_data: dict
    proposed_data: dict
    prior_status: str
    prior_final_price: Optional[float] = None
    request_notes: Optional[str] = None
    response_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

    @field_validator("created_at", "responded_at")
    @classmethod
    def validate_timestamps(cls, v):
        return _aware(v)


class PricingSettings(BaseModel):
    """Rate card read by the pricing engine. One instance per market."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    base_price_per_mile: float = Field(2.5, gt=0)
    base_waiting_rate_per_minute: float = Field(0.25, ge=0)
    wheelchair_surcharge: float = Field(5.0, ge=0)
    stretcher_surcharge: float = Field(15.0, ge=0)
    ramp_fee: float = Field(0.0, ge=0)
    companion_fee: float = Field(0.0, ge=0)
    stair_chair_fee: float = Field(0.0, ge=0)
    nighttime_multiplier: float = Field(1.25, gt=0)
    weekend_multiplier: float = Field(1.15, gt=0)
    round_trip_multiplier: float = Field(1.8, gt=0)
    surge_factor: float = Field(1.0, gt=0)
    cancellation_fee: float = Field(25.0, ge=0)
    late_cancellation_window_hours: float = Field(24, gt=0)
    timezone: str = "America/New_York"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}")
        return v


class PricingSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_price_per_mile: Optional[float] = Field(None, gt=0)
    base_waiting_rate_per_minute: Optional[float] = Field(None, ge=0)
    wheelchair_surcharge: Optional[float] = Field(None, ge=0)
    stretcher_surcharge: Optional[float] = Field(None, ge=0)
    ramp_fee: Optional[float] = Field(None, ge=0)
    companion_fee: Optional[float] = Field(None, ge=0)
    stair_chair_fee: Optional[float] = Field(None, ge=0)
    nighttime_multiplier: Optional[float] = Field(None, gt=0)
    weekend_multiplier: Optional[float] = Field(None, gt=0)
    round_trip_multiplier: Optional[float] = Field(None, gt=0)
    surge_factor: Optional[float] = Field(None, gt=0)
    cancellation_fee: Optional[float] = Field(None, ge=0)
    late_cancellation_window_hours: Optional[float] = Field(None, gt=0)
    timezone: Optional[str] = None


class BidCreate(BaseModel):
    driver_id: int = Field(..., gt=0)
    amount: float = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=1000)


class CounterCreate(BaseModel):
    proposed_by: Party
    amount: float = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=1000)


class AcceptRequest(BaseModel):
    accepted_by: Optional[int] = Field(None, gt=0)


class DriverConfirm(BaseModel):
    driver_id: int = Field(..., gt=0)


class StatusAdvance(BaseModel):
    status: Literal["en_route", "arrived", "in_progress", "completed"]
    driver_id: Optional[int] = Field(None, gt=0)


class CancelRequest(BaseModel):
    initiator: Party
    reason: Optional[str] = Field(None, max_length=500)


class ItineraryChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pickup_location: Optional[str] = Field(None, min_length=1, max_length=500)
    pickup_lat: Optional[float] = Field(None, ge=-90, le=90)
    pickup_lng: Optional[float] = Field(None, ge=-180, le=180)
    dropoff_location: Optional[str] = Field(None, min_length=1, max_length=500)
    dropoff_lat: Optional[float] = Field(None, ge=-90, le=90)
    dropoff_lng: Optional[float] = Field(None, ge=-180, le=180)
    scheduled_time: Optional[datetime] = None
    special_instructions: Optional[str] = Field(None, max_length=2000)

    @field_validator("scheduled_time")
    @classmethod
    def validate_scheduled_time(cls, v):
        return _aware(v)

    @model_validator(mode="after")
    def validate_not_empty(self):
        if not self.model_fields_set:
            raise ValueError("proposed change is empty")
        return self


class EditCreate(BaseModel):
    requested_by: int = Field(..., gt=0)
    proposed_data: ItineraryChange
    request_notes: Optional[str] = Field(None, max_length=2000)


class EditResponse(BaseModel):
    accept: bool
    response_notes: Optional[str] = Field(None, max_length=2000)
    responded_by: Optional[int] = Field(None, gt=0)


class PriceQuote(BaseModel):
    ride_id: int
    amount: Optional[float]
    determined: bool


class CancellationOut(BaseModel):
    ride: Ride
    fee: float
    late: bool
    reliability_flag: bool


class AcceptOut(BaseModel):
    ride: Ride
    bid: Bid
    payment_status: Optional[str] = None


class CounterOut(BaseModel):
    bid: Bid
    max_reached: bool
