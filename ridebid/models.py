from datetime import datetime, timezone
from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    JSON,
    Boolean,
    MetaData,
    Index,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Ride status constants
RIDE_REQUESTED = "requested"
RIDE_BIDDING = "bidding"
RIDE_SCHEDULED = "scheduled"
RIDE_PAYMENT_PENDING = "payment_pending"
RIDE_PAID = "paid"
RIDE_EN_ROUTE = "en_route"
RIDE_ARRIVED = "arrived"
RIDE_IN_PROGRESS = "in_progress"
RIDE_COMPLETED = "completed"
RIDE_CANCELLED = "cancelled"
RIDE_EDIT_PENDING = "edit_pending"

RIDE_STATUSES = (
    RIDE_REQUESTED,
    RIDE_BIDDING,
    RIDE_SCHEDULED,
    RIDE_PAYMENT_PENDING,
    RIDE_PAID,
    RIDE_EN_ROUTE,
    RIDE_ARRIVED,
    RIDE_IN_PROGRESS,
    RIDE_COMPLETED,
    RIDE_CANCELLED,
    RIDE_EDIT_PENDING,
)

# statuses that carry a locked final_price
PRICED_STATUSES = frozenset({
    RIDE_SCHEDULED,
    RIDE_PAYMENT_PENDING,
    RIDE_PAID,
    RIDE_EN_ROUTE,
    RIDE_ARRIVED,
    RIDE_IN_PROGRESS,
    RIDE_COMPLETED,
})
# statuses from which an itinerary edit may be proposed
EDITABLE_STATUSES = PRICED_STATUSES - {RIDE_COMPLETED}
OPEN_FOR_BIDS = frozenset({RIDE_REQUESTED, RIDE_BIDDING})
CANCELLABLE_STATUSES = frozenset({
    RIDE_REQUESTED, RIDE_BIDDING, RIDE_SCHEDULED, RIDE_PAYMENT_PENDING, RIDE_PAID,
})

VEHICLE_STANDARD = "standard"
VEHICLE_WHEELCHAIR = "wheelchair"
VEHICLE_STRETCHER = "stretcher"

PARTY_RIDER = "rider"
PARTY_DRIVER = "driver"

# Bid status constants
BID_ACTIVE = "active"
BID_SELECTED = "selected"
BID_ACCEPTED = "accepted"
BID_REJECTED = "rejected"
BID_COUNTERED = "countered"
BID_MAX_REACHED = "maxReached"
BID_WITHDRAWN = "withdrawn"

LIVE_BID_STATUSES = frozenset({BID_ACTIVE, BID_SELECTED})
TERMINAL_BID_STATUSES = frozenset({BID_ACCEPTED, BID_REJECTED, BID_MAX_REACHED, BID_WITHDRAWN})

EDIT_PENDING = "pending"
EDIT_ACCEPTED = "accepted"
EDIT_REJECTED = "rejected"

PAY_PENDING = "pending"
PAY_SUCCESS = "success"
PAY_FAILED = "failed"
PAY_REQUIRES_ACTION = "requires_action"


metadata = MetaData()

rides = Table(
    "rides",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("reference_number", String, unique=True),
    Column("rider_id", Integer, nullable=False),
    Column("driver_id", Integer, nullable=True),
    Column("pickup_location", String, nullable=False),
    Column("pickup_lat", Float, nullable=True),
    Column("pickup_lng", Float, nullable=True),
    Column("dropoff_location", String, nullable=False),
    Column("dropoff_lat", Float, nullable=True),
    Column("dropoff_lng", Float, nullable=True),
    Column("scheduled_time", DateTime(timezone=True), nullable=False),
    Column("estimated_distance", Float, nullable=True),
    Column("is_round_trip", Boolean, default=False),
    Column("vehicle_type", String, default=VEHICLE_STANDARD),
    Column("needs_ramp", Boolean, default=False),
    Column("needs_companion", Boolean, default=False),
    Column("needs_stair_chair", Boolean, default=False),
    Column("needs_wait_time", Boolean, default=False),
    Column("wait_time_minutes", Integer, default=0),
    Column("special_instructions", String, nullable=True),
    Column("rider_bid", Float, nullable=True),
    Column("final_price", Float, nullable=True),
    Column("status", String, default=RIDE_REQUESTED, nullable=False),
    Column("cancelled_by", String, nullable=True),
    Column("cancelled_driver_id", Integer, nullable=True),
    Column("cancellation_fee", Float, nullable=True),
    Column("late_cancellation", Boolean, default=False),
    Column("driver_reliability_flag", Boolean, default=False),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow),
    Index("idx_rides_status", "status"),
    Index("idx_rides_rider_id", "rider_id"),
    Index("idx_rides_driver_id", "driver_id"),
)

bids = Table(
    "bids",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ride_id", Integer, nullable=False),
    Column("driver_id", Integer, nullable=False),
    Column("amount", Float, nullable=False),
    Column("notes", String, nullable=True),
    Column("status", String, default=BID_ACTIVE, nullable=False),
    Column("parent_bid_id", Integer, nullable=True),
    Column("counter_party", String, default=PARTY_DRIVER),
    Column("round", Integer, default=1),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Index("idx_bids_ride_status", "ride_id", "status"),
    Index("idx_bids_parent", "parent_bid_id"),
)

ride_edits = Table(
    "ride_edits",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ride_id", Integer, nullable=False),
    Column("requested_by", Integer, nullable=True),
    Column("status", String, default=EDIT_PENDING, nullable=False),
    Column("original_data", JSON),
    Column("proposed_data", JSON),
    Column("prior_status", String, nullable=False),
    Column("prior_final_price", Float, nullable=True),
    Column("request_notes", String, nullable=True),
    Column("response_notes", String, nullable=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("responded_at", DateTime(timezone=True), nullable=True),
    Index("idx_ride_edits_ride_status", "ride_id", "status"),
)

pricing_settings = Table(
    "pricing_settings",
    metadata,
    Column("market", String, primary_key=True),
    Column("data", JSON),
    Column("updated_at", DateTime(timezone=True), default=utcnow),
)

payments = Table(
    "payments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ride_id", Integer, nullable=False),
    Column("rider_id", Integer, nullable=False),
    Column("amount", Float, nullable=False),
    Column("idempotency_key", String, unique=True, nullable=False),
    Column("status", String, default=PAY_PENDING),
    Column("attempts", Integer, default=0),
    Column("decline_reason", String, nullable=True),
    Column("provider_response", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("updated_at", DateTime(timezone=True), default=utcnow),
)

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("key", String, unique=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Column("response", JSON, nullable=True),
)
