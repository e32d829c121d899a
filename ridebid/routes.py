from fastapi import APIRouter, Depends, Header, Query
from typing import List, Optional
import logging

from . import schemas
from .services import Marketplace

logger = logging.getLogger(__name__)

router = APIRouter()

_marketplace: Optional[Marketplace] = None


def get_marketplace() -> Marketplace:
    global _marketplace
    if _marketplace is None:
        _marketplace = Marketplace()
    return _marketplace


# ===================== Rides =====================

@router.post("/rides", response_model=schemas.Ride, status_code=201)
async def create_ride(req: schemas.RideCreate, idempotency_key: Optional[str] = Header(None), market: Marketplace = Depends(get_marketplace)):
    logger.info("create_ride: rider=%s pickup=%s", req.rider_id, req.pickup_location)
    return await market.request_ride(req, idempotency_key=idempotency_key)


@router.get("/rides", response_model=List[schemas.Ride])
async def list_rides(
    rider_id: Optional[int] = None,
    driver_id: Optional[int] = None,
    status: Optional[str] = None,
    open_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    market: Marketplace = Depends(get_marketplace),
):
    return await market.list_rides(rider_id=rider_id, driver_id=driver_id, status=status, open_only=open_only, limit=limit)


@router.get("/rides/{ride_id}", response_model=schemas.Ride)
async def get_ride(ride_id: int, market: Marketplace = Depends(get_marketplace)):
    return await market.get_ride(ride_id)


@router.get("/rides/{ride_id}/price", response_model=schemas.PriceQuote)
async def get_price(ride_id: int, market: Marketplace = Depends(get_marketplace)):
    amount = await market.quote_price(ride_id)
    return schemas.PriceQuote(ride_id=ride_id, amount=amount, determined=amount is not None)


@router.post("/rides/{ride_id}/status", response_model=schemas.Ride)
async def advance_status(ride_id: int, payload: schemas.StatusAdvance, market: Marketplace = Depends(get_marketplace)):
    logger.info("advance_status: ride=%s status=%s driver=%s", ride_id, payload.status, payload.driver_id)
    return await market.advance_ride_status(ride_id, payload.status, driver_id=payload.driver_id)


@router.post("/rides/{ride_id}/cancel", response_model=schemas.CancellationOut)
async def cancel_ride(ride_id: int, payload: schemas.CancelRequest, market: Marketplace = Depends(get_marketplace)):
    outcome = await market.cancel_ride(ride_id, payload.initiator, reason=payload.reason)
    return schemas.CancellationOut(
        ride=outcome.ride, fee=outcome.fee, late=outcome.late, reliability_flag=outcome.reliability_flag,
    )


@router.post("/rides/{ride_id}/payment", response_model=schemas.Ride)
async def retry_payment(ride_id: int, market: Marketplace = Depends(get_marketplace)):
    logger.info("retry_payment: ride=%s", ride_id)
    return await market.collect_payment(ride_id)


# ===================== Bids =====================

@router.post("/rides/{ride_id}/bids", response_model=schemas.Bid, status_code=201)
async def place_bid(ride_id: int, payload: schemas.BidCreate, market: Marketplace = Depends(get_marketplace)):
    logger.info("place_bid: ride=%s driver=%s amount=%s", ride_id, payload.driver_id, payload.amount)
    return await market.submit_bid(ride_id, payload.driver_id, payload.amount, payload.notes)


@router.get("/rides/{ride_id}/bids", response_model=List[schemas.Bid])
async def ride_bids(ride_id: int, market: Marketplace = Depends(get_marketplace)):
    await market.get_ride(ride_id)
    return await market.bid_history(ride_id=ride_id)


@router.post("/bids/{bid_id}/counter", response_model=schemas.CounterOut, status_code=201)
async def counter_bid(bid_id: int, payload: schemas.CounterCreate, market: Marketplace = Depends(get_marketplace)):
    result = await market.submit_counter(bid_id, payload.proposed_by, payload.amount, payload.notes)
    return schemas.CounterOut(bid=result.bid, max_reached=result.max_reached)


@router.post("/bids/{bid_id}/select", response_model=schemas.Bid)
async def select_bid(bid_id: int, market: Marketplace = Depends(get_marketplace)):
    return await market.select_bid(bid_id)


@router.post("/bids/{bid_id}/accept", response_model=schemas.AcceptOut)
async def accept_bid(bid_id: int, payload: Optional[schemas.AcceptRequest] = None, market: Marketplace = Depends(get_marketplace)):
    accepted_by = payload.accepted_by if payload else None
    logger.info("accept_bid: bid=%s by=%s", bid_id, accepted_by)
    outcome = await market.accept_bid(bid_id, accepted_by=accepted_by)
    return schemas.AcceptOut(ride=outcome.ride, bid=outcome.bid, payment_status=outcome.payment_status)


@router.post("/bids/{bid_id}/driver-accept", response_model=schemas.AcceptOut)
async def driver_accept_bid(bid_id: int, payload: schemas.DriverConfirm, market: Marketplace = Depends(get_marketplace)):
    logger.info("driver_accept_bid: bid=%s driver=%s", bid_id, payload.driver_id)
    outcome = await market.confirm_selected_bid(bid_id, payload.driver_id)
    return schemas.AcceptOut(ride=outcome.ride, bid=outcome.bid, payment_status=outcome.payment_status)


@router.delete("/bids/{bid_id}", response_model=schemas.Bid)
async def withdraw_bid(bid_id: int, driver_id: int = Query(..., gt=0), market: Marketplace = Depends(get_marketplace)):
    return await market.withdraw_bid(bid_id, driver_id)


@router.get("/bids/{bid_id}/history", response_model=List[schemas.Bid])
async def bid_history(bid_id: int, market: Marketplace = Depends(get_marketplace)):
    return await market.bid_history(bid_id=bid_id)


# ===================== Edits =====================

@router.post("/rides/{ride_id}/edits", response_model=schemas.RideEdit, status_code=201)
async def propose_edit(ride_id: int, payload: schemas.EditCreate, market: Marketplace = Depends(get_marketplace)):
    return await market.propose_edit(
        ride_id,
        payload.proposed_data.model_dump(exclude_unset=True),
        request_notes=payload.request_notes,
        requested_by=payload.requested_by,
    )


@router.get("/rides/{ride_id}/edits", response_model=List[schemas.RideEdit])
async def list_edits(ride_id: int, market: Marketplace = Depends(get_marketplace)):
    return await market.list_edits(ride_id)


@router.post("/edits/{edit_id}/respond", response_model=schemas.RideEdit)
async def respond_to_edit(edit_id: int, payload: schemas.EditResponse, market: Marketplace = Depends(get_marketplace)):
    return await market.respond_to_edit(
        edit_id, payload.accept, response_notes=payload.response_notes, responded_by=payload.responded_by,
    )


# ===================== Pricing settings =====================

@router.get("/pricing-settings", response_model=schemas.PricingSettings)
async def get_pricing_settings(market: Marketplace = Depends(get_marketplace)):
    return await market.get_pricing_settings()


@router.put("/pricing-settings", response_model=schemas.PricingSettings)
async def update_pricing_settings(payload: schemas.PricingSettingsUpdate, market: Marketplace = Depends(get_marketplace)):
    return await market.update_pricing_settings(payload.model_dump(exclude_unset=True))
