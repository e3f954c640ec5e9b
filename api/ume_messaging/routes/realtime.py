"""WebSocket bridge from the change relay to connected clients.

Protocol (JSON frames):

    -> {"action": "subscribe", "table": "messages", "filter": "listing_id=eq.L1"}
    <- {"type": "subscribed", "subscription_id": "...", "table": "messages"}
    <- {"type": "change", "subscription_id": "...", "eventType": "INSERT", ...}
    -> {"action": "unsubscribe", "subscription_id": "..."}
    -> {"action": "ping"}

Only events whose row involves the authenticated user are forwarded.
Subscriptions are torn down when the socket closes.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ume_messaging.core.security import verify_identity_token
from ume_messaging.realtime.relay import ChangeEvent, Subscription

logger = logging.getLogger(__name__)

router = APIRouter()

SUBSCRIBABLE_TABLES = {"messages", "conversations"}
PARTICIPANT_COLUMNS = ("sender_id", "receiver_id", "participant_1_id", "participant_2_id")
OUTBOUND_QUEUE_SIZE = 256
POLICY_VIOLATION = 1008


def event_involves(event: ChangeEvent, user_id: str) -> bool:
    row = event.row
    return any(row.get(column) == user_id for column in PARTICIPANT_COLUMNS)


class RealtimeSession:
    """One authenticated socket and its relay subscriptions."""

    def __init__(self, websocket: WebSocket, relay, user_id: str):
        self.websocket = websocket
        self.relay = relay
        self.user_id = user_id
        self.subscriptions: Dict[str, Subscription] = {}
        self.outbound: asyncio.Queue = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)

    def _enqueue(self, frame: Dict[str, Any]) -> None:
        try:
            self.outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Realtime queue full for %s, dropping frame", self.user_id)

    def handle_frame(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            self._enqueue({"type": "error", "message": "Frames must be JSON objects"})
            return
        action = frame.get("action")
        if action == "subscribe":
            table = frame.get("table")
            if table not in SUBSCRIBABLE_TABLES:
                self._enqueue({"type": "error", "message": f"Unknown table: {table}"})
                return

            def forward(event: ChangeEvent) -> None:
                if event_involves(event, self.user_id):
                    self._enqueue(
                        {"type": "change", "subscription_id": subscription.id}
                        | event.to_dict()
                    )

            try:
                subscription = self.relay.subscribe(table, forward, frame.get("filter"))
            except ValueError as e:
                self._enqueue({"type": "error", "message": str(e)})
                return
            self.subscriptions[subscription.id] = subscription
            self._enqueue(
                {
                    "type": "subscribed",
                    "subscription_id": subscription.id,
                    "table": table,
                }
            )
        elif action == "unsubscribe":
            subscription_id = frame.get("subscription_id")
            subscription = self.subscriptions.pop(subscription_id, None)
            if subscription is not None:
                subscription.unsubscribe()
            self._enqueue({"type": "unsubscribed", "subscription_id": subscription_id})
        elif action == "ping":
            self._enqueue({"type": "pong"})
        else:
            self._enqueue({"type": "error", "message": f"Unknown action: {action}"})

    async def pump_outbound(self) -> None:
        while True:
            frame = await self.outbound.get()
            await self.websocket.send_json(frame)

    def close(self) -> None:
        for subscription in self.subscriptions.values():
            subscription.unsubscribe()
        self.subscriptions.clear()


async def receive_frames(websocket: WebSocket, session: RealtimeSession) -> None:
    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                session.handle_frame(None)
                continue
            session.handle_frame(frame)
    except WebSocketDisconnect:
        logger.info("Realtime session closed for %s", session.user_id)


@router.websocket("/realtime")
async def realtime_socket(websocket: WebSocket, token: str = Query(default="")):
    settings = websocket.app.state.settings
    payload = verify_identity_token(token, settings.IDENTITY_TOKEN_SECRET)
    if payload is None:
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    session = RealtimeSession(websocket, websocket.app.state.relay, payload.user_id)
    receiver = asyncio.create_task(receive_frames(websocket, session))
    sender = asyncio.create_task(session.pump_outbound())
    logger.info("Realtime session opened for %s", payload.user_id)
    try:
        # Whichever side stops first ends the session
        done, _ = await asyncio.wait(
            {receiver, sender}, return_when=asyncio.FIRST_COMPLETED
        )
        if sender in done and sender.exception() is not None:
            logger.warning(
                "Realtime send failed for %s: %s", payload.user_id, sender.exception()
            )
        if receiver in done and receiver.exception() is not None:
            raise receiver.exception()
    finally:
        session.close()
        for task in (receiver, sender):
            task.cancel()
        await asyncio.gather(receiver, sender, return_exceptions=True)
