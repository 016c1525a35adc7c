from datetime import datetime, timezone

import pytest

from parcelsync.app.models import ParcelStatus, PositionFix, UserRole
from parcelsync.courier.adapter import CourierAdapter
from parcelsync.exceptions import InvalidPayload

PARCEL_PAYLOAD = {
    "_id": "665f1c2e9b1e8a0012a4b001",
    "trackingCode": "CP-7F3K9Q",
    "status": "DELIVERED",
    "assignedAgentId": {"_id": "agent-1", "name": "Rahim", "role": "AGENT"},
    "customerId": "cust-1",
    "pickupAddressId": {"_id": "addr-1", "fullAddress": "12 Road 4", "lat": "23.78", "lng": 90.40},
    "deliveryAddressId": {"_id": "addr-2", "fullAddress": "7 Lake View"},
    "weight": 2.5,
    "paymentType": "COD",
    "codAmount": "1200",
    "failureReason": "stale reason",
    "createdAt": "2024-05-01T08:00:00.000Z",
    "updatedAt": "2024-05-01T10:00:00.000Z",
    "deliveredAt": "2024-05-01T10:00:00.000Z",
}


def test_to_parcel_converts_references_and_numbers():
    parcel = CourierAdapter.to_parcel(PARCEL_PAYLOAD)

    assert parcel.id == "665f1c2e9b1e8a0012a4b001"
    assert parcel.status is ParcelStatus.DELIVERED
    assert parcel.assigned_agent.name == "Rahim"
    assert parcel.assigned_agent.role is UserRole.AGENT
    assert parcel.customer.id == "cust-1"
    assert parcel.pickup_address.lat == 23.78
    assert parcel.pickup_address.has_coordinates
    assert not parcel.delivery_address.has_coordinates
    assert parcel.cod_amount == 1200.0
    assert parcel.delivered_at == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def test_to_parcel_keeps_status_invariants():
    parcel = CourierAdapter.to_parcel(PARCEL_PAYLOAD)
    assert parcel.failure_reason is None

    failed = CourierAdapter.to_parcel({**PARCEL_PAYLOAD, "status": "FAILED"})
    assert failed.failure_reason == "stale reason"
    assert failed.delivered_at is None


def test_to_parcels_skips_broken_entries():
    parcels = CourierAdapter.to_parcels(
        [PARCEL_PAYLOAD, {"_id": "x"}, {**PARCEL_PAYLOAD, "_id": "y", "status": "LOST"}]
    )
    assert [p.id for p in parcels] == ["665f1c2e9b1e8a0012a4b001"]


def test_to_tracking_detail():
    detail = CourierAdapter.to_tracking_detail(
        {
            "parcel": PARCEL_PAYLOAD,
            "history": [
                {"_id": "h1", "status": "BOOKED", "createdAt": "2024-05-01T08:00:00Z"},
                {"_id": "h2", "status": "ASSIGNED", "note": "", "createdAt": "2024-05-01T08:30:00Z"},
                {"status": "PICKED_UP"},
            ],
            "tracking": {
                "latest": {"_id": "t2", "lat": 23.79, "lng": 90.41, "createdAt": "2024-05-01T09:10:00Z"},
                "history": [
                    {"_id": "t1", "lat": 23.78, "lng": 90.40, "createdAt": "2024-05-01T09:00:00Z"},
                    {"_id": "t0", "lat": "north", "lng": 90.40},
                ],
            },
        }
    )
    assert [e.id for e in detail.history] == ["h1", "h2"]
    assert detail.history[1].note is None
    assert [p.id for p in detail.points] == ["t1"]
    assert detail.latest_point.id == "t2"


def test_to_tracking_detail_without_parcel():
    with pytest.raises(InvalidPayload):
        CourierAdapter.to_tracking_detail({"history": []})


def test_to_status_event():
    event = CourierAdapter.to_status_event(
        {
            "parcelId": "p1",
            "status": "in_transit",
            "trackingCode": "CP-1",
            "updatedAt": "2024-05-01T09:00:00Z",
            "extra": "ignored",
        }
    )
    assert event.status is ParcelStatus.IN_TRANSIT
    assert event.tracking_code == "CP-1"
    assert event.updated_at == datetime(2024, 5, 1, 9, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "payload",
    [None, {}, {"parcelId": "p1"}, {"parcelId": "p1", "status": "LOST"}, {"parcelId": "", "status": "BOOKED"}],
)
def test_to_status_event_rejects(payload):
    with pytest.raises(InvalidPayload):
        CourierAdapter.to_status_event(payload)


def test_naive_timestamps_are_treated_as_utc():
    parsed = CourierAdapter._parse_datetime("2024-05-01 09:00:00")
    assert parsed.tzinfo is not None
    assert CourierAdapter._parse_datetime("yesterday") is None


def test_unwrap_notification_push():
    item, unread = CourierAdapter.unwrap_notification_push(
        {
            "notification": {
                "_id": "n1",
                "type": "PARCEL_STATUS",
                "title": "Parcel delivered",
                "data": {"trackingCode": "CP-1"},
            },
            "unreadCount": 4,
        }
    )
    assert item.id == "n1"
    assert item.tracking_code == "CP-1"
    assert not item.is_read
    assert unread == 4


def test_unread_count_must_be_an_integer():
    _, unread = CourierAdapter.unwrap_notification_push({"_id": "n1", "unreadCount": "4"})
    assert unread is None


def test_to_session_user():
    user = CourierAdapter.to_session_user({"id": "u1", "role": "CUSTOMER", "name": "Karim"})
    assert user.role is UserRole.CUSTOMER
    with pytest.raises(InvalidPayload):
        CourierAdapter.to_session_user({"_id": "u1", "role": "OWNER"})


def test_tracking_payload():
    fix = PositionFix(lat=23.78, lng=90.4, timestamp=datetime.now(timezone.utc), speed=3.5)
    assert CourierAdapter.tracking_payload(fix, "p1") == {
        "lat": 23.78,
        "lng": 90.4,
        "speed": 3.5,
        "parcelId": "p1",
    }


def test_pagination_meta():
    meta = CourierAdapter.to_pagination_meta({"page": 2, "limit": 20, "total": 41, "totalPages": 3})
    assert meta.total_pages == 3
    assert meta.unread_count is None
