"""
Tests for the RelayHub dispatcher and ConnectionManager.
Uses fake WebSockets and drives the event loop with asyncio.run.
"""
import asyncio
import json
from api.metrics import registry
from api.websocket_manager import ConnectionManager, RelayHub
from core.config import settings

GRACE = 0.05


def frame(action: str, **fields) -> str:
    return json.dumps({"action": action, **fields})


async def connect_and_login(hub: RelayHub, websocket, name: str) -> str:
    connection_id = await hub.connect(websocket)
    await hub.dispatch(connection_id, frame("login", display_name=name))
    return connection_id


class TestConnectionManager:
    """Tests for ConnectionManager."""

    def test_connect_accepts_and_assigns_unique_ids(self, fake_websocket_factory):
        """Test each accepted socket gets its own connection id."""
        async def scenario():
            manager = ConnectionManager()
            ws1, ws2 = fake_websocket_factory(), fake_websocket_factory()
            id1 = await manager.connect(ws1)
            id2 = await manager.connect(ws2)
            return manager, ws1, id1, id2

        manager, ws1, id1, id2 = asyncio.run(scenario())

        assert ws1.accepted
        assert id1 != id2
        assert manager.get_connection_count() == 2

    def test_broadcast_excludes_sender(self, fake_websocket_factory):
        """Test broadcast reaches everyone except the excluded id."""
        async def scenario():
            manager = ConnectionManager()
            sockets = [fake_websocket_factory() for _ in range(3)]
            ids = [await manager.connect(ws) for ws in sockets]
            sent = await manager.broadcast({"type": "ping"}, exclude_id=ids[0])
            return sockets, sent

        sockets, sent = asyncio.run(scenario())

        assert sent == 2
        assert sockets[0].sent == []
        assert sockets[1].types() == ["ping"]

    def test_failed_send_drops_connection(self, fake_websocket_factory):
        """Test a socket that fails to send is removed and no error escapes."""
        async def scenario():
            manager = ConnectionManager()
            connection_id = await manager.connect(fake_websocket_factory(fail_on_send=True))
            ok = await manager.send_to(connection_id, {"type": "ping"})
            return manager, ok

        manager, ok = asyncio.run(scenario())

        assert ok is False
        assert manager.get_connection_count() == 0

    def test_send_to_unknown_connection(self):
        """Test sending to an unknown id is a silent no-op."""
        assert asyncio.run(ConnectionManager().send_to("ghost", {"type": "ping"})) is False


class TestDispatch:
    """Tests for frame parsing and routing."""

    def test_login_flow_over_hub(self, fake_websocket_factory):
        """Test two logins produce peer-list and peer-joined frames."""
        async def scenario():
            hub = RelayHub(grace_period_seconds=GRACE)
            ws1, ws2 = fake_websocket_factory(), fake_websocket_factory()
            id1 = await connect_and_login(hub, ws1, "Alice")
            id2 = await connect_and_login(hub, ws2, "Bob")
            return ws1, ws2, id1, id2

        ws1, ws2, id1, id2 = asyncio.run(scenario())

        assert ws1.types() == ["peer-list", "peer-joined"]
        assert ws1.last("peer-joined")["payload"]["id"] == id2
        assert ws2.types() == ["peer-list"]
        assert [p["id"] for p in ws2.last("peer-list")["payload"]] == [id1]

    def test_outbound_envelope_shape(self, fake_websocket_factory):
        """Test outbound frames carry type, payload and timestamp."""
        async def scenario():
            hub = RelayHub()
            ws = fake_websocket_factory()
            await connect_and_login(hub, ws, "Alice")
            return ws

        message = asyncio.run(scenario()).sent[0]

        assert set(message) == {"type", "payload", "timestamp"}
        assert isinstance(message["timestamp"], str)

    def test_default_avatar_generated(self, fake_websocket_factory):
        """Test login without avatar gets a URL built from the display name."""
        async def scenario():
            hub = RelayHub(avatar_url_template="https://avatars.test/{name}")
            connection_id = await connect_and_login(hub, fake_websocket_factory(), "Ana Maria")
            return hub.engine.registry.get(connection_id)

        profile = asyncio.run(scenario())

        assert profile.avatar == "https://avatars.test/Ana%20Maria"

    def test_malformed_frames_are_dropped(self, fake_websocket_factory):
        """Test bad JSON, unknown actions and invalid payloads produce no reply."""
        async def scenario():
            hub = RelayHub()
            ws = fake_websocket_factory()
            connection_id = await connect_and_login(hub, ws, "Alice")
            ws.sent.clear()
            for raw in [
                "not json",
                "[1, 2, 3]",
                frame("fly-to-moon"),
                json.dumps({"display_name": "no action"}),
                frame("send-message", body="missing recipient"),
                frame("login", display_name=""),
                frame("status-update", status=42),
                frame("get-history"),
                frame("send-message", recipient_id="a-b", body="x"),
                frame("get-history", other_id="a-b"),
                frame("typing-start", recipient_id="a-b"),
            ]:
                await hub.dispatch(connection_id, raw)
            return hub, ws, connection_id

        hub, ws, connection_id = asyncio.run(scenario())

        assert ws.sent == []
        assert hub.engine.registry.get(connection_id).display_name == "Alice"
        assert hub.engine.history.message_count() == 0

    def test_private_message_round_trip(self, fake_websocket_factory):
        """Test Alice -> Bob delivers, acks, and is retrievable from history."""
        async def scenario():
            hub = RelayHub()
            ws1, ws2 = fake_websocket_factory(), fake_websocket_factory()
            id1 = await connect_and_login(hub, ws1, "Alice")
            id2 = await connect_and_login(hub, ws2, "Bob")
            await hub.dispatch(id1, frame("send-message", recipient_id=id2, body="hi"))
            await hub.dispatch(id2, frame("get-history", other_id=id1))
            return ws1, ws2, id1

        ws1, ws2, id1 = asyncio.run(scenario())

        delivered = ws2.last("private-message")["payload"]
        ack = ws1.last("message-ack")["payload"]
        result = ws2.last("history-result")["payload"]
        assert delivered["body"] == "hi"
        assert delivered["sender_display_name"] == "Alice"
        assert ack["id"] == delivered["id"]
        assert result["other_id"] == id1
        assert [m["body"] for m in result["messages"]] == ["hi"]

    def test_typing_and_status_frames(self, fake_websocket_factory):
        """Test typing and status frames reach the right sockets."""
        async def scenario():
            hub = RelayHub()
            ws1, ws2 = fake_websocket_factory(), fake_websocket_factory()
            id1 = await connect_and_login(hub, ws1, "Alice")
            id2 = await connect_and_login(hub, ws2, "Bob")
            ws1.sent.clear()
            ws2.sent.clear()
            await hub.dispatch(id1, frame("typing-start", recipient_id=id2))
            await hub.dispatch(id1, frame("typing-stop", recipient_id=id2))
            await hub.dispatch(id1, frame("status-update", status="busy"))
            return ws1, ws2

        ws1, ws2 = asyncio.run(scenario())

        assert ws1.sent == []
        assert ws2.types() == ["peer-typing", "peer-stopped-typing", "status-changed"]
        assert ws2.last("status-changed")["payload"]["status"] == "busy"

    def test_peer_ids_with_separator_are_rejected(self, fake_websocket_factory):
        """Test ids containing the conversation separator cannot alias another conversation."""
        async def scenario():
            hub = RelayHub()
            sockets = [fake_websocket_factory() for _ in range(3)]
            ids = sorted([await connect_and_login(hub, ws, name) for ws, name in zip(sockets, "ABC")])
            first, second, third = ids
            await hub.dispatch(third, frame("send-message", recipient_id=f"{first}-{second}", body="aliased"))
            await hub.dispatch(first, frame("get-history", other_id=f"{second}-{third}"))
            return hub, sockets

        hub, sockets = asyncio.run(scenario())

        assert hub.engine.history.message_count() == 0
        for ws in sockets:
            assert "message-ack" not in ws.types()
            assert "history-result" not in ws.types()

    def test_default_avatar_template_comes_from_settings(self):
        """Test a hub built without a template uses the configured one."""
        assert RelayHub().avatar_url_template == settings.avatar_url_template


class TestDeliveryMetrics:
    """Tests for the private message delivery counter."""

    @staticmethod
    def delivered(label: str) -> float:
        value = registry.get_sample_value("relay_private_messages_total", {"delivery": label})
        return value or 0.0

    def count_labels(self, scenario) -> dict:
        labels = ("live", "undelivered", "archived")
        before = {label: self.delivered(label) for label in labels}
        asyncio.run(scenario())
        return {label: self.delivered(label) - before[label] for label in labels}

    def test_message_to_open_socket_counts_live(self, fake_websocket_factory):
        """Test a message accepted by the recipient socket counts as live."""
        async def scenario():
            hub = RelayHub()
            id1 = await connect_and_login(hub, fake_websocket_factory(), "Alice")
            id2 = await connect_and_login(hub, fake_websocket_factory(), "Bob")
            await hub.dispatch(id1, frame("send-message", recipient_id=id2, body="hi"))

        assert self.count_labels(scenario) == {"live": 1, "undelivered": 0, "archived": 0}

    def test_message_to_recipient_in_grace_period_counts_undelivered(self, fake_websocket_factory):
        """Test a registered recipient whose socket is gone is not counted as live."""
        async def scenario():
            hub = RelayHub(grace_period_seconds=GRACE)
            id1 = await connect_and_login(hub, fake_websocket_factory(), "Alice")
            id2 = await connect_and_login(hub, fake_websocket_factory(), "Bob")
            await hub.on_disconnect(id2)
            await hub.dispatch(id1, frame("send-message", recipient_id=id2, body="hi"))
            await hub.shutdown()

        assert self.count_labels(scenario) == {"live": 0, "undelivered": 1, "archived": 0}

    def test_message_to_unknown_recipient_counts_archived(self, fake_websocket_factory):
        """Test a message to an unknown id is only archived."""
        async def scenario():
            hub = RelayHub()
            id1 = await connect_and_login(hub, fake_websocket_factory(), "Alice")
            await hub.dispatch(id1, frame("send-message", recipient_id="ghost", body="boo"))

        assert self.count_labels(scenario) == {"live": 0, "undelivered": 0, "archived": 1}


class TestGracePeriod:
    """Tests for deferred removal after disconnect."""

    def test_profile_removed_after_grace_period(self, fake_websocket_factory):
        """Test disconnect with no re-login removes the profile once the grace period ends."""
        async def scenario():
            hub = RelayHub(grace_period_seconds=GRACE)
            ws1, ws2 = fake_websocket_factory(), fake_websocket_factory()
            id1 = await connect_and_login(hub, ws1, "Alice")
            await connect_and_login(hub, ws2, "Bob")

            await hub.on_disconnect(id1)
            during = hub.engine.registry.get(id1).status
            pending = hub.pending_removals
            await asyncio.sleep(GRACE * 4)
            return hub, ws2, id1, during, pending

        hub, ws2, id1, during, pending = asyncio.run(scenario())

        assert during == "offline"
        assert pending == [id1]
        assert ws2.last("peer-left")["payload"]["user_id"] == id1
        assert id1 not in hub.engine.registry
        assert hub.pending_removals == []

    def test_login_within_grace_cancels_removal(self, fake_websocket_factory):
        """Test a login for the same id inside the grace period keeps the profile online."""
        async def scenario():
            hub = RelayHub(grace_period_seconds=GRACE)
            ws = fake_websocket_factory()
            connection_id = await connect_and_login(hub, ws, "Alice")

            await hub.on_disconnect(connection_id)
            await hub.dispatch(connection_id, frame("login", display_name="Alice"))
            await asyncio.sleep(GRACE * 4)
            return hub, connection_id

        hub, connection_id = asyncio.run(scenario())

        profile = hub.engine.registry.get(connection_id)
        assert profile is not None
        assert profile.status == "online"
        assert hub.pending_removals == []

    def test_disconnect_before_login_schedules_nothing(self, fake_websocket_factory):
        """Test a connection that never logged in leaves no timer behind."""
        async def scenario():
            hub = RelayHub(grace_period_seconds=GRACE)
            connection_id = await hub.connect(fake_websocket_factory())
            await hub.on_disconnect(connection_id)
            return hub

        hub = asyncio.run(scenario())

        assert hub.pending_removals == []
        assert len(hub.engine.registry) == 0

    def test_shutdown_cancels_pending_removals(self, fake_websocket_factory):
        """Test shutdown cancels timers so nothing fires afterwards."""
        async def scenario():
            hub = RelayHub(grace_period_seconds=GRACE)
            connection_id = await connect_and_login(hub, fake_websocket_factory(), "Alice")
            await hub.on_disconnect(connection_id)
            await hub.shutdown()
            await asyncio.sleep(GRACE * 4)
            return hub, connection_id

        hub, connection_id = asyncio.run(scenario())

        assert hub.pending_removals == []
        assert hub.engine.registry.get(connection_id).status == "offline"
