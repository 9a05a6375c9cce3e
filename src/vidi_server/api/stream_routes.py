# Vidi Server: Dashboard Live Stream (WebSocket)
#
#   WS /ws/v1/dashboards/{id}
#
# Server -> viewer: connected (seq 0), then every hub broadcast for the
# dashboard tagged with its sequence number. Viewer -> server: sync,
# get_state (both answered by a refresh_all broadcast built from a fresh
# store read) and ack (informational). Malformed and binary frames are
# logged and ignored.

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..errors import ConflictError, NotFoundError, VidiError
from ..models.messages import (
    Ack,
    Connected,
    ErrorNotice,
    RefreshAll,
    ServerMessage,
    parse_client_message,
)
from ..stream.hub import Subscription
from .services import services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stream"])

CLOSE_NOT_FOUND = 4404   # dashboard does not exist
CLOSE_REMOVED = 4410     # dashboard deleted while connected


class _Connection:
    """One viewer socket; sends are serialized between the two pumps."""

    def __init__(self, websocket: WebSocket, dashboard_id: str, subscription: Subscription):
        self.websocket = websocket
        self.dashboard_id = dashboard_id
        self.subscription = subscription
        self._send_lock = asyncio.Lock()

    async def send(self, message: ServerMessage):
        async with self._send_lock:
            await self.websocket.send_json(message.to_dict())

    async def send_error(self, text: str):
        seq = services.hub.current_seq(self.dashboard_id)
        await self.send(ServerMessage(seq=seq, payload=ErrorNotice(text)))

    async def forward(self):
        """Hub -> socket. Returns when the subscription is closed."""
        while True:
            message = await self.subscription.get()
            if message is None:
                return
            dropped = self.subscription.take_dropped()
            if dropped:
                logger.warning("Viewer of %s fell behind, %d updates dropped",
                               self.dashboard_id, dropped)
                await self.send_error(f"{dropped} updates dropped; send sync to resynchronize")
            await self.send(message)

    async def receive(self):
        """Socket -> server. Returns (via WebSocketDisconnect) when the viewer leaves."""
        while True:
            frame = await self.websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            raw = frame.get("text")
            if raw is None:
                logger.warning("Ignoring non-text frame on %s", self.dashboard_id)
                continue
            try:
                message = parse_client_message(raw)
            except ConflictError as exc:
                logger.warning("Ignoring malformed message on %s: %s", self.dashboard_id, exc)
                continue

            if isinstance(message, Ack):
                logger.debug("Viewer of %s acked seq %d", self.dashboard_id, message.seq)
                continue

            # sync and get_state: full resend of the current document
            try:
                document = services.store.get_document(self.dashboard_id)
            except VidiError as exc:
                logger.error("State read for %s failed: %s", self.dashboard_id, exc)
                await self.send_error(f"Could not load dashboard state: {exc}")
                continue
            if document is None:
                await self.send_error("Dashboard no longer exists")
                continue
            services.hub.broadcast(self.dashboard_id, RefreshAll(dashboard=document))


@router.websocket("/ws/v1/dashboards/{dashboard_id}")
async def dashboard_stream(websocket: WebSocket, dashboard_id: str):
    await websocket.accept()
    try:
        services.store.touch(dashboard_id)
    except NotFoundError:
        logger.info("WebSocket for unknown dashboard %s rejected", dashboard_id)
        await websocket.close(code=CLOSE_NOT_FOUND)
        return

    subscription = services.hub.subscribe(dashboard_id)
    conn = _Connection(websocket, dashboard_id, subscription)
    logger.info("Viewer connected to %s (%d live)",
                dashboard_id, services.hub.connection_count(dashboard_id))

    try:
        await conn.send(ServerMessage(seq=0, payload=Connected(dashboard_id)))

        forward = asyncio.create_task(conn.forward())
        receive = asyncio.create_task(conn.receive())
        done, pending = await asyncio.wait(
            {forward, receive}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Stream for %s ended with error: %r", dashboard_id, exc)

        if forward in done and forward.exception() is None:
            # Subscription closed by the hub: the dashboard was removed.
            try:
                await websocket.close(code=CLOSE_REMOVED)
            except RuntimeError:
                logger.debug("Socket for %s already closed", dashboard_id)
    except WebSocketDisconnect:
        pass
    finally:
        services.hub.unsubscribe(dashboard_id, subscription)
        logger.info("Viewer disconnected from %s", dashboard_id)
