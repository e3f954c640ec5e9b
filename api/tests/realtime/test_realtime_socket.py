"""Tests for the realtime WebSocket bridge."""

import asyncio
from types import SimpleNamespace

import pytest
from starlette.websockets import WebSocketDisconnect

from ume_messaging.routes.realtime import realtime_socket
from tests.support import ALICE, BOB, CAROL, LISTING, auth_headers, make_token


def _subscribe(ws, table, **extra):
    ws.send_json({"action": "subscribe", "table": table, **extra})
    return ws.receive_json()


class TestRealtimeSocket:
    def test_invalid_token_is_rejected(self, test_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/realtime?token=bogus") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_ping(self, test_client):
        with test_client.websocket_connect(f"/realtime?token={make_token(ALICE)}") as ws:
            ws.send_json({"action": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_unknown_table_and_action(self, test_client):
        with test_client.websocket_connect(f"/realtime?token={make_token(ALICE)}") as ws:
            assert _subscribe(ws, "users")["type"] == "error"
            ws.send_json({"action": "dance"})
            assert ws.receive_json()["type"] == "error"

    def test_receives_insert_for_own_conversation(self, test_client):
        with test_client.websocket_connect(f"/realtime?token={make_token(BOB)}") as ws:
            subscribed = _subscribe(ws, "messages", filter=f"listing_id=eq.{LISTING}")
            assert subscribed["type"] == "subscribed"

            sent = test_client.post(
                "/messages",
                json={"listing_id": LISTING, "receiver_id": BOB, "body": "hi bob"},
                headers=auth_headers(ALICE),
            ).json()

            frame = ws.receive_json()
            assert frame["type"] == "change"
            assert frame["subscription_id"] == subscribed["subscription_id"]
            assert frame["eventType"] == "INSERT"
            assert frame["table"] == "messages"
            assert frame["new"]["id"] == sent["id"]

    def test_other_users_changes_are_not_forwarded(self, test_client):
        with test_client.websocket_connect(f"/realtime?token={make_token(CAROL)}") as ws:
            _subscribe(ws, "messages")
            test_client.post(
                "/messages",
                json={"listing_id": LISTING, "receiver_id": BOB, "body": "private"},
                headers=auth_headers(ALICE),
            )
            ws.send_json({"action": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_unsubscribe_stops_events(self, test_client):
        relay = test_client.app.state.relay
        with test_client.websocket_connect(f"/realtime?token={make_token(BOB)}") as ws:
            subscribed = _subscribe(ws, "conversations")
            ws.send_json(
                {"action": "unsubscribe", "subscription_id": subscribed["subscription_id"]}
            )
            assert ws.receive_json()["type"] == "unsubscribed"
            assert relay.subscription_count == 0

    def test_subscriptions_removed_on_disconnect(self, test_client):
        relay = test_client.app.state.relay
        with test_client.websocket_connect(f"/realtime?token={make_token(BOB)}") as ws:
            _subscribe(ws, "messages")
            _subscribe(ws, "conversations")
            assert relay.subscription_count == 2
        test_client.get("/health/live")
        assert relay.subscription_count == 0


class BrokenSendSocket:
    """WebSocket double whose outbound side fails on the first frame."""

    def __init__(self, state):
        self.app = SimpleNamespace(state=state)
        self.incoming = asyncio.Queue()
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def close(self, code=1000):
        pass

    async def receive_json(self):
        return await self.incoming.get()

    async def send_json(self, data):
        raise RuntimeError("connection reset")


class TestRealtimeSendFailure:
    @pytest.mark.asyncio
    async def test_send_failure_ends_session(self, stack):
        before = stack.relay.subscription_count
        socket = BrokenSendSocket(
            SimpleNamespace(settings=stack.settings, relay=stack.relay)
        )
        await socket.incoming.put({"action": "subscribe", "table": "messages"})

        await asyncio.wait_for(
            realtime_socket(socket, token=make_token(ALICE)), timeout=2
        )

        assert socket.accepted
        assert stack.relay.subscription_count == before
