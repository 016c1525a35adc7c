import pytest

from conftest import at
from parcelsync.app.models import NotificationItem, PaginationMeta
from parcelsync.app.notifications import NotificationStream
from parcelsync.const import EVENT_NOTIFICATION_USER, ROOM_AGENT, ROOM_USER
from parcelsync.courier.adapter import CourierAdapter
from parcelsync.exceptions import CourierApiError


def item(notification_id: str, is_read: bool = False, minutes: float = 0) -> NotificationItem:
    return NotificationItem(
        id=notification_id,
        type="PARCEL_STATUS",
        title=f"Update {notification_id}",
        created_at=at(minutes),
        is_read=is_read,
    )


def push(notification_id: str, unread_count=None, **fields):
    payload = {"notification": {"_id": notification_id, "title": "Parcel update", **fields}}
    if unread_count is not None:
        payload["unreadCount"] = unread_count
    return payload


@pytest.fixture
def stream(api) -> NotificationStream:
    return NotificationStream(api, CourierAdapter(), limit=3, page_size=10)


@pytest.mark.asyncio
async def test_refresh_uses_server_unread_count(stream, backend):
    backend.notifications = [item("n1"), item("n2", is_read=True)]
    backend.notification_meta = PaginationMeta(page=1, limit=10, unread_count=7)

    assert await stream.async_refresh()

    assert stream.unread_count == 7
    assert [n.id for n in stream.notifications] == ["n1", "n2"]
    assert backend.calls[-1] == ("list_notifications", 1, 10)


@pytest.mark.asyncio
async def test_refresh_counts_unread_without_meta(stream, backend):
    backend.notifications = [item("n1"), item("n2", is_read=True), item("n3")]
    await stream.async_refresh()
    assert stream.unread_count == 2


@pytest.mark.asyncio
async def test_refresh_failure_keeps_list(stream, backend):
    backend.notifications = [item("n1")]
    await stream.async_refresh()
    backend.error = CourierApiError("Service unavailable", status=503)

    assert not await stream.async_refresh()
    assert [n.id for n in stream.notifications] == ["n1"]
    assert stream.last_error == "Service unavailable"


def test_push_unread_count_overwrites_local_value(stream):
    stream._unread_count = 3
    stream.apply_push(push("n1", unread_count=7))
    assert stream.unread_count == 7


def test_push_without_unread_count_leaves_counter(stream):
    stream._unread_count = 3
    stream.apply_push(push("n1"))
    assert stream.unread_count == 3


def test_push_prepends_upserts_and_caps(stream):
    for notification_id in ("n1", "n2", "n3", "n4"):
        stream.apply_push(push(notification_id))
    assert [n.id for n in stream.notifications] == ["n4", "n3", "n2"]

    stream.apply_push(push("n3", title="Delivered"))
    assert [n.id for n in stream.notifications] == ["n3", "n4", "n2"]
    assert stream.notifications[0].title == "Delivered"


def test_push_never_marks_read_item_unread(stream):
    stream.apply_push(push("n1", isRead=True))
    stream.apply_push(push("n1", isRead=False))
    assert stream.notifications[0].is_read


def test_bare_push_and_garbage(stream):
    assert stream.apply_push({"_id": "n1", "title": "Bare"}).id == "n1"
    assert stream.apply_push("not a payload") is None
    assert stream.apply_push({"notification": {"title": "no id"}}) is None
    assert len(stream.notifications) == 1


@pytest.mark.asyncio
async def test_mark_one_is_optimistic(stream, backend):
    backend.notifications = [item("n1"), item("n2")]
    backend.notification_meta = PaginationMeta(unread_count=2)
    await stream.async_refresh()
    backend.mark_meta = PaginationMeta(unread_count=1)

    seen = []
    stream.add_listener(lambda: seen.append(stream.unread_count))
    await stream.async_mark_one("n1")

    assert seen[0] == 1
    assert stream.notifications[0].is_read
    assert stream.notifications[0].read_at is not None
    assert stream.unread_count == 1


@pytest.mark.asyncio
async def test_mark_one_failure_keeps_local_state(stream, backend):
    backend.notifications = [item("n1")]
    backend.notification_meta = PaginationMeta(unread_count=1)
    await stream.async_refresh()
    backend.error = CourierApiError("Not found", status=404)

    with pytest.raises(CourierApiError):
        await stream.async_mark_one("n1")

    assert stream.notifications[0].is_read
    assert stream.unread_count == 0
    assert stream.last_error == "Not found"


@pytest.mark.asyncio
async def test_mark_all(stream, backend):
    backend.notifications = [item("n1"), item("n2", is_read=True), item("n3")]
    await stream.async_refresh()
    backend.mark_meta = PaginationMeta(unread_count=0)

    await stream.async_mark_all()

    assert all(n.is_read for n in stream.notifications)
    assert stream.unread_count == 0
    assert backend.count("mark_all_notifications") == 1


@pytest.mark.asyncio
async def test_start_subscribes_to_user_pushes(stream, backend, manager, socket_module, agent_user):
    backend.notification_meta = PaginationMeta(unread_count=0)
    assert await stream.async_start(manager, agent_user)

    client = socket_module.client
    assert (ROOM_USER, "u-agent") in client.emitted
    assert (ROOM_AGENT, "u-agent") in client.emitted

    await client.fire(EVENT_NOTIFICATION_USER, push("n9", unread_count=1))
    assert stream.notifications[0].id == "n9"
    assert stream.unread_count == 1

    await stream.async_stop()
    assert manager.subscriber_count == 0
    assert not client.connected


@pytest.mark.asyncio
async def test_start_without_transport_still_loads(stream, backend, unavailable_manager, agent_user):
    backend.notifications = [item("n1")]
    assert not await stream.async_start(unavailable_manager, agent_user)
    assert [n.id for n in stream.notifications] == ["n1"]
