import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import FakeDispatcher
from engage.main import app, install_components
from engage.services.realtime import TOPIC_MESSAGE_PERSISTED, TOPIC_TICKET_UPDATED, RealtimeHub


class TestRealtimeHub:
    def test_publish_reaches_tenant_room_only(self):
        hub = RealtimeHub()
        mine = hub.subscribe("tenant-1")
        other = hub.subscribe("tenant-2")

        delivered = hub.publish("tenant-1", TOPIC_MESSAGE_PERSISTED, {"ticketId": "t-1"})

        assert delivered == 1
        assert mine.queue.get_nowait() == {
            "topic": TOPIC_MESSAGE_PERSISTED,
            "tenantId": "tenant-1",
            "payload": {"ticketId": "t-1"},
        }
        assert other.queue.empty()

    def test_ticket_filter(self):
        hub = RealtimeHub()
        watcher = hub.subscribe("tenant-1", ticket_id="t-2")

        hub.publish("tenant-1", TOPIC_TICKET_UPDATED, {"ticketId": "t-1"})
        hub.publish("tenant-1", TOPIC_TICKET_UPDATED, {"ticketId": "t-2"})

        assert watcher.queue.qsize() == 1
        assert watcher.queue.get_nowait()["payload"]["ticketId"] == "t-2"

    def test_events_without_ticket_reach_ticket_watchers(self):
        hub = RealtimeHub()
        watcher = hub.subscribe("tenant-1", ticket_id="t-2")

        delivered = hub.publish("tenant-1", TOPIC_TICKET_UPDATED, {"ticketId": None, "effectiveMode": "MANUAL"})

        assert delivered == 1
        assert watcher.queue.get_nowait()["payload"]["effectiveMode"] == "MANUAL"

    def test_full_queue_drops_instead_of_blocking(self):
        hub = RealtimeHub(queue_size=2)
        slow = hub.subscribe("tenant-1")

        results = [hub.publish("tenant-1", TOPIC_MESSAGE_PERSISTED, {"n": n}) for n in range(4)]

        assert results == [1, 1, 0, 0]
        assert slow.dropped == 2
        assert slow.queue.get_nowait()["payload"] == {"n": 0}

    def test_unsubscribe_empties_room(self):
        hub = RealtimeHub()
        first = hub.subscribe("tenant-1")
        second = hub.subscribe("tenant-1")
        assert hub.subscriber_count("tenant-1") == 2

        hub.unsubscribe(first)
        hub.unsubscribe(second)
        hub.unsubscribe(second)

        assert hub.subscriber_count("tenant-1") == 0
        assert hub.publish("tenant-1", TOPIC_MESSAGE_PERSISTED, {}) == 0

    def test_next_event_waits_for_publish(self):
        hub = RealtimeHub()

        async def scenario():
            subscription = hub.subscribe("tenant-1")
            waiter = asyncio.create_task(subscription.next_event())
            await asyncio.sleep(0)
            hub.publish("tenant-1", TOPIC_TICKET_UPDATED, {"ticketId": "t-9"})
            return await asyncio.wait_for(waiter, timeout=1)

        event = asyncio.run(scenario())
        assert event["payload"]["ticketId"] == "t-9"


class TestWebSocketFeed:
    @pytest.fixture
    def client(self, session_factory, no_ai_settings):
        install_components(app, session_factory, provider=None, dispatcher=FakeDispatcher())
        return TestClient(app)

    def test_ping_pong_and_cleanup(self, client):
        hub = app.state.hub

        with client.websocket_connect("/ws/tenants/tenant-1?ticket_id=t-1") as websocket:
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}
            assert hub.subscriber_count("tenant-1") == 1

            websocket.send_text("not json")
            assert websocket.receive_json()["type"] == "error"

        assert hub.subscriber_count("tenant-1") == 0
