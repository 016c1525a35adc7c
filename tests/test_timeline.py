from dataclasses import replace

from parcelsync.app.models import Address, ParcelStatus
from parcelsync.app.timeline import build_route, build_timeline


def test_timeline_is_chronological_with_completion(make_entry):
    history = [
        make_entry("h3", ParcelStatus.PICKED_UP, 20, note="Collected"),
        make_entry("h1", ParcelStatus.BOOKED, 0),
        make_entry("h2", ParcelStatus.ASSIGNED, 10),
    ]
    events = build_timeline(history, ParcelStatus.ASSIGNED)

    assert [e.status for e in events] == [
        ParcelStatus.BOOKED,
        ParcelStatus.ASSIGNED,
        ParcelStatus.PICKED_UP,
    ]
    assert [e.completed for e in events] == [True, True, False]
    assert events[1].label == "Agent Assigned"
    assert events[2].description == "Collected"
    assert events[0].description == "Parcel marked as Booked."


def test_failed_and_cancelled_entries_are_never_completed(make_entry):
    history = [
        make_entry("h1", ParcelStatus.IN_TRANSIT, 0),
        make_entry("h2", ParcelStatus.FAILED, 5, note="No answer"),
        make_entry("h3", ParcelStatus.CANCELLED, 9),
    ]
    events = build_timeline(history, ParcelStatus.CANCELLED)
    assert [e.completed for e in events] == [False, False, False]


def test_equal_timestamps_keep_insertion_order(make_entry):
    first = replace(make_entry("h1", ParcelStatus.BOOKED, 0), sequence=1)
    second = replace(make_entry("h2", ParcelStatus.ASSIGNED, 0), sequence=2)
    events = build_timeline([second, first], ParcelStatus.ASSIGNED)
    assert [e.entry_id for e in events] == ["h1", "h2"]


def test_empty_history():
    assert build_timeline([], ParcelStatus.BOOKED) == []


def test_route_adds_address_endpoints(make_parcel, make_point, addresses):
    pickup, delivery = addresses
    parcel = make_parcel(pickup_address=pickup, delivery_address=delivery)
    route = build_route(parcel, [make_point(23.785, 90.406, 5), make_point(23.782, 90.405, 1)])

    assert [p.kind for p in route] == ["pickup", "tracking", "tracking", "delivery"]
    assert route[1].lat == 23.782
    assert route[2].lat == 23.785


def test_route_skips_endpoints_equal_to_live_points(make_parcel, make_point, addresses):
    pickup, delivery = addresses
    parcel = make_parcel(pickup_address=pickup, delivery_address=delivery)
    points = [
        make_point(pickup.lat + 1e-7, pickup.lng, 0),
        make_point(delivery.lat, delivery.lng - 1e-7, 9),
    ]
    route = build_route(parcel, points)
    assert len(route) == 2
    assert all(p.kind == "tracking" for p in route)


def test_route_without_points_is_pickup_to_delivery(make_parcel, addresses):
    pickup, delivery = addresses
    route = build_route(make_parcel(pickup_address=pickup, delivery_address=delivery), [])
    assert [(p.kind, p.lat) for p in route] == [("pickup", pickup.lat), ("delivery", delivery.lat)]


def test_route_drops_invalid_points_and_addresses(make_parcel, make_point):
    parcel = make_parcel(
        pickup_address=Address(id="a1", full_address="No geocode"),
        delivery_address=None,
    )
    route = build_route(parcel, [make_point(float("inf"), 90.4, 0), make_point(23.8, 90.4, 1)])
    assert len(route) == 1
    assert route[0].kind == "tracking"


def test_route_without_parcel():
    assert build_route(None, []) == []
