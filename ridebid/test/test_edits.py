from datetime import timedelta

import pytest

from ridebid import edits, models
from ridebid.errors import (
    EditAlreadyPending,
    EditNotPending,
    InvalidTransition,
    ValidationError,
)

DRIVER = 7


async def scheduled_ride(market, ride_request, **overrides):
    ride = await market.request_ride(ride_request(**overrides))
    bid = await market.submit_bid(ride.id, DRIVER, 30.0)
    return (await market.accept_bid(bid.id)).ride


def test_rejected_edit_restores_ride(run, ride_request):
    async def scenario(market):
        ride = await scheduled_ride(market, ride_request)
        edit = await market.propose_edit(ride.id, {"pickup_location": "44 Oak Ave"}, request_notes="moved")
        parked = await market.get_ride(ride.id)
        answered = await market.respond_to_edit(edit.id, False, response_notes="too far", responded_by=DRIVER)
        return ride, edit, parked, answered, await market.get_ride(ride.id)

    before, edit, parked, answered, after = run(scenario, collect_payment_on_accept=False)
    assert edit.status == models.EDIT_PENDING
    assert edit.prior_status == models.RIDE_SCHEDULED
    assert edit.prior_final_price == 30.0
    assert parked.status == models.RIDE_EDIT_PENDING
    assert parked.final_price is None
    assert parked.driver_id == DRIVER

    assert answered.status == models.EDIT_REJECTED
    assert answered.response_notes == "too far"
    assert answered.responded_at is not None
    assert after.status == models.RIDE_SCHEDULED
    assert after.final_price == 30.0
    assert edits.itinerary_of(after) == edits.itinerary_of(before)


def test_accepted_edit_applies_proposal(run, ride_request):
    async def scenario(market):
        ride = await scheduled_ride(market, ride_request)
        later = ride.scheduled_time + timedelta(hours=3)
        edit = await market.propose_edit(
            ride.id, {"scheduled_time": later, "special_instructions": "use side door"},
        )
        answered = await market.respond_to_edit(edit.id, True)
        return answered, await market.get_ride(ride.id), later

    edit, after, later = run(scenario, collect_payment_on_accept=False)
    assert edit.status == models.EDIT_ACCEPTED
    assert after.status == models.RIDE_SCHEDULED
    assert after.final_price == 30.0
    assert after.scheduled_time == later
    assert edits.itinerary_of(after) == {**edit.original_data, **edit.proposed_data}


def test_edit_on_paid_ride_returns_to_paid(run, ride_request):
    async def scenario(market):
        ride = await scheduled_ride(market, ride_request)
        assert ride.status == models.RIDE_PAID
        edit = await market.propose_edit(ride.id, {"dropoff_location": "County Clinic"})
        await market.respond_to_edit(edit.id, True)
        return await market.get_ride(ride.id)

    ride = run(scenario)
    assert ride.status == models.RIDE_PAID
    assert ride.dropoff_location == "County Clinic"


def test_coordinate_change_refreshes_distance(run, ride_request):
    async def scenario(market):
        ride = await scheduled_ride(
            market, ride_request, pickup_lat=40.0, pickup_lng=-74.0, dropoff_lat=40.0, dropoff_lng=-74.1,
        )
        edit = await market.propose_edit(ride.id, {"dropoff_lat": 40.2, "dropoff_lng": -74.0})
        await market.respond_to_edit(edit.id, True)
        return ride, edit, await market.get_ride(ride.id)

    before, edit, after = run(scenario, collect_payment_on_accept=False)
    assert "estimated_distance" in edit.proposed_data
    assert after.estimated_distance == edit.proposed_data["estimated_distance"]
    assert after.estimated_distance > before.estimated_distance


def test_second_proposal_while_pending(run, ride_request):
    async def scenario(market):
        ride = await scheduled_ride(market, ride_request)
        await market.propose_edit(ride.id, {"pickup_location": "44 Oak Ave"})
        with pytest.raises(EditAlreadyPending):
            await market.propose_edit(ride.id, {"pickup_location": "46 Oak Ave"})
        return await market.list_edits(ride.id)

    assert len(run(scenario, collect_payment_on_accept=False)) == 1


def test_edit_answered_once(run, ride_request):
    async def scenario(market):
        ride = await scheduled_ride(market, ride_request)
        edit = await market.propose_edit(ride.id, {"pickup_location": "44 Oak Ave"})
        await market.respond_to_edit(edit.id, True)
        with pytest.raises(EditNotPending):
            await market.respond_to_edit(edit.id, False)
        return await market.get_ride(ride.id)

    ride = run(scenario, collect_payment_on_accept=False)
    assert ride.pickup_location == "44 Oak Ave"
    assert ride.status == models.RIDE_SCHEDULED


def test_unassigned_ride_cannot_be_edited(run, ride_request):
    async def scenario(market):
        ride = await market.request_ride(ride_request(rider_bid=25.0))
        with pytest.raises(InvalidTransition):
            await market.propose_edit(ride.id, {"pickup_location": "44 Oak Ave"})

    run(scenario)


def test_bad_proposals_rejected(run, ride_request):
    async def scenario(market):
        ride = await scheduled_ride(market, ride_request)
        for bad in ({}, {"rider_bid": 10}, {"pickup_lat": 123.0}, {"pickup_location": None}):
            with pytest.raises(ValidationError):
                await market.propose_edit(ride.id, bad)
        with pytest.raises(ValidationError):
            await market.propose_edit(ride.id, {"pickup_location": "x"}, requested_by=ride.rider_id + 1)
        return await market.get_ride(ride.id)

    assert run(scenario, collect_payment_on_accept=False).status == models.RIDE_SCHEDULED


def test_only_assigned_driver_answers(run, ride_request):
    async def scenario(market):
        ride = await scheduled_ride(market, ride_request)
        edit = await market.propose_edit(ride.id, {"pickup_location": "44 Oak Ave"}, requested_by=ride.rider_id)
        with pytest.raises(ValidationError):
            await market.respond_to_edit(edit.id, True, responded_by=DRIVER + 1)
        return await market.get_ride(ride.id)

    assert run(scenario, collect_payment_on_accept=False).status == models.RIDE_EDIT_PENDING
