# tests/test_events.py — Event bus delivery and service event emission
import asyncio

import pytest

from events import EventBus, EventChannel


@pytest.mark.asyncio
async def test_publish_reaches_subscriber():
    bus = EventBus()
    sub = bus.subscribe(EventChannel.TICKET_CREATED)
    assert bus.publish(EventChannel.TICKET_CREATED, {"id": "t1"}) == 1
    assert await sub.get() == {"id": "t1"}
    sub.close()


@pytest.mark.asyncio
async def test_predicate_filters_per_subscriber():
    bus = EventBus()
    mine = bus.subscribe("ticket_moved", predicate=lambda p: p["project_id"] == "p1")
    everything = bus.subscribe("ticket_moved")

    bus.publish("ticket_moved", {"project_id": "p2"})
    bus.publish("ticket_moved", {"project_id": "p1"})

    assert await mine.get() == {"project_id": "p1"}
    assert mine.pending() == 0
    assert everything.pending() == 2
    bus.close()


@pytest.mark.asyncio
async def test_failing_predicate_skips_payload():
    bus = EventBus()
    sub = bus.subscribe("ticket_updated", predicate=lambda p: p["missing"])
    assert bus.publish("ticket_updated", {"id": "x"}) == 0
    assert sub.pending() == 0
    bus.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_isolated():
    bus = EventBus()
    a = bus.subscribe("audit_added")
    b = bus.subscribe("audit_added")
    a.close()
    a.close()
    assert a.closed
    assert bus.subscriber_count("audit_added") == 1

    bus.publish("audit_added", {"id": 1})
    assert await b.get() == {"id": 1}
    bus.close()


@pytest.mark.asyncio
async def test_close_wakes_pending_consumer():
    bus = EventBus()
    sub = bus.subscribe("agent_changed")

    async def consume():
        return [payload async for payload in sub]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    bus.publish("agent_changed", {"action": "created"})
    await asyncio.sleep(0)
    sub.close()
    assert await asyncio.wait_for(task, timeout=1) == [{"action": "created"}]


@pytest.mark.asyncio
async def test_full_queue_drops_payload():
    bus = EventBus(queue_size=1)
    sub = bus.subscribe("ticket_viewed")
    assert bus.publish("ticket_viewed", {"n": 1}) == 1
    assert bus.publish("ticket_viewed", {"n": 2}) == 0
    assert await sub.get() == {"n": 1}
    bus.close()


@pytest.mark.asyncio
async def test_context_manager_unsubscribes():
    bus = EventBus()
    async with bus.subscribe("project_changed") as sub:
        assert bus.subscriber_count() == 1
    assert sub.closed
    assert bus.subscriber_count() == 0
    assert bus.publish("project_changed", {}) == 0


@pytest.mark.asyncio
async def test_closed_bus_rejects_subscribers():
    bus = EventBus()
    bus.close()
    with pytest.raises(RuntimeError):
        bus.subscribe("ticket_created")


# ============================================================
# SERVICE EMISSION
# ============================================================

@pytest.mark.asyncio
async def test_move_publishes_scoped_event(service, event_bus, test_project, test_agent):
    ticket = await service.create_ticket(test_project.id, "Watch me")
    moved = event_bus.subscribe(EventChannel.TICKET_MOVED, predicate=lambda p: p["project_id"] == test_project.id)
    other = event_bus.subscribe(EventChannel.TICKET_MOVED, predicate=lambda p: p["project_id"] == "elsewhere")

    await service.move_ticket(test_project.id, ticket.id, "in_review", actor_id=test_agent.id)

    payload = await asyncio.wait_for(moved.get(), timeout=1)
    assert payload["id"] == ticket.id
    assert payload["column"] == "in_review"
    assert other.pending() == 0


@pytest.mark.asyncio
async def test_noop_publishes_nothing(service, event_bus, test_project):
    ticket = await service.create_ticket(test_project.id, "Quiet", column="done")
    moved = event_bus.subscribe(EventChannel.TICKET_MOVED)
    activity = event_bus.subscribe(EventChannel.ACTIVITY_ADDED)

    await service.close_ticket(test_project.id, ticket.id)
    await service.update_ticket(test_project.id, ticket.id, {"title": "Quiet"})

    assert moved.pending() == 0
    assert activity.pending() == 0


@pytest.mark.asyncio
async def test_comment_and_view_events(service, event_bus, test_project, test_agent):
    ticket = await service.create_ticket(test_project.id, "Talk")
    comments = event_bus.subscribe(EventChannel.COMMENT_ADDED)
    views = event_bus.subscribe(EventChannel.TICKET_VIEWED)

    await service.create_comment(test_project.id, ticket.id, test_agent.id, "note")
    await service.get_ticket(test_project.id, ticket.id, viewer_id=test_agent.id)

    comment = await comments.get()
    assert comment["project_id"] == test_project.id
    assert comment["body"] == "note"
    view = await views.get()
    assert view == {
        "project_id": test_project.id,
        "ticket_id": ticket.id,
        "agent_id": test_agent.id,
        "agent_name": "test-agent",
    }


@pytest.mark.asyncio
async def test_delete_event_carries_snapshot(service, event_bus, test_project):
    ticket = await service.create_ticket(test_project.id, "Gone soon")
    deleted = event_bus.subscribe(EventChannel.TICKET_DELETED)
    await service.delete_ticket(test_project.id, ticket.id)
    payload = await deleted.get()
    assert payload["id"] == ticket.id
    assert payload["title"] == "Gone soon"
