"""
WebSocket connection manager and relay dispatcher.

ConnectionManager tracks open sockets by connection id and performs the
actual sends. RelayHub feeds validated frames to the PresenceEngine and
applies the returned Reactions: emissions become sends, and the grace-period
removal becomes a cancellable asyncio task keyed by connection id.

Everything runs on one event loop. Engine handlers are synchronous, so state
mutations from different connections never interleave; only the sends that
follow a handler are awaited.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote
from uuid import uuid4

from fastapi import WebSocket
from pydantic import ValidationError

from api.metrics import (
    relay_connections_total, relay_disconnections_total,
    relay_events_received_total, relay_events_dropped_total,
    relay_messages_sent_total, relay_private_messages_total,
    update_relay_metrics
)
from api.schemas import COMMANDS, WSCommand, WSEvent
from core.config import settings
from relay.engine import PresenceEngine, PRIVATE_MESSAGE, Reaction, TargetKind

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Tracks open WebSocket connections by connection id.

    Sends never raise: a failed send logs the error and drops the stale
    connection from tracking.
    """

    def __init__(self):
        # {connection_id: WebSocket}
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept a WebSocket and assign it a fresh connection id.

        Returns:
            The connection id, which doubles as the user id for the session
        """
        await websocket.accept()
        connection_id = uuid4().hex
        self.active_connections[connection_id] = websocket
        logger.info(
            f"Connection {connection_id} opened "
            f"(total connections: {len(self.active_connections)})"
        )
        return connection_id

    def disconnect(self, connection_id: str):
        """Stop tracking a connection. Idempotent."""
        if self.active_connections.pop(connection_id, None) is not None:
            logger.info(
                f"Connection {connection_id} closed "
                f"(remaining connections: {len(self.active_connections)})"
            )

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """
        Send a JSON message to one connection.

        Returns:
            True if the message was handed to the socket
        """
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            logger.debug(f"No active connection {connection_id}; dropping {message.get('type')}")
            return False

        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending to connection {connection_id}: {e}")
            self.disconnect(connection_id)
            return False

        relay_messages_sent_total.labels(type=message.get("type", "unknown")).inc()
        return True

    async def broadcast(self, message: dict, exclude_id: Optional[str] = None) -> int:
        """
        Send a JSON message to every connection except `exclude_id`.

        Returns:
            Number of connections that received the message
        """
        sent_count = 0
        for connection_id in list(self.active_connections):
            if connection_id == exclude_id:
                continue
            if await self.send_to(connection_id, message):
                sent_count += 1
        return sent_count

    def get_connection_count(self) -> int:
        return len(self.active_connections)


class RelayHub:
    """
    Dispatcher between the WebSocket endpoint and the PresenceEngine.

    Owns the engine, the connection manager and the pending grace-period
    removal tasks.
    """

    def __init__(
        self,
        engine: Optional[PresenceEngine] = None,
        connections: Optional[ConnectionManager] = None,
        grace_period_seconds: float = 5.0,
        avatar_url_template: Optional[str] = None,
    ):
        self.engine = engine if engine is not None else PresenceEngine()
        self.connections = connections if connections is not None else ConnectionManager()
        self.grace_period_seconds = grace_period_seconds
        self.avatar_url_template = avatar_url_template or settings.avatar_url_template

        # {connection_id: Task} - deferred removals awaiting the grace period
        self._removal_tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> str:
        connection_id = await self.connections.connect(websocket)
        relay_connections_total.inc()
        update_relay_metrics(self)
        return connection_id

    async def on_disconnect(self, connection_id: str, reason: str = "normal"):
        """Drop the socket and run the engine's disconnect transition."""
        self.connections.disconnect(connection_id)
        relay_disconnections_total.labels(reason=reason).inc()
        await self.apply(connection_id, self.engine.disconnect(connection_id))
        update_relay_metrics(self)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def dispatch(self, connection_id: str, raw: str):
        """
        Parse, validate and handle one inbound text frame.

        Malformed frames are dropped without any reply.
        """
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            self.drop(connection_id, "invalid_json")
            return

        if not isinstance(frame, dict):
            self.drop(connection_id, "invalid_frame")
            return

        action = frame.get("action")
        model = COMMANDS.get(action) if isinstance(action, str) else None
        if model is None:
            self.drop(connection_id, "unknown_action", action)
            return

        try:
            command = model.model_validate(frame)
        except ValidationError as e:
            self.drop(connection_id, "invalid_payload", action)
            logger.debug(f"Validation errors for {action}: {e.errors()}")
            return

        relay_events_received_total.labels(action=action).inc()
        reaction = self.handle(connection_id, action, command)
        await self.apply(connection_id, reaction)
        update_relay_metrics(self)

    def handle(self, connection_id: str, action: str, command: WSCommand) -> Reaction:
        """Route a validated command to its engine handler."""
        engine = self.engine

        if action == "login":
            avatar = command.avatar or self.default_avatar(command.display_name)
            return engine.login(connection_id, command.display_name, avatar)

        if action == "get-peers":
            return engine.get_peers(connection_id)

        if action == "send-message":
            reaction = engine.send_message(
                connection_id, command.recipient_id, command.body, command.client_timestamp
            )
            if reaction.emissions and not any(e.event == PRIVATE_MESSAGE for e in reaction.emissions):
                relay_private_messages_total.labels(delivery="archived").inc()
            return reaction

        if action == "get-history":
            return engine.get_history(connection_id, command.other_id)

        if action == "typing-start":
            return engine.typing_start(connection_id, command.recipient_id)

        if action == "typing-stop":
            return engine.typing_stop(connection_id, command.recipient_id)

        if action == "status-update":
            return engine.update_status(connection_id, command.status)

        raise ValueError(f"Unhandled action: {action}")

    def default_avatar(self, display_name: str) -> str:
        return self.avatar_url_template.format(name=quote(display_name))

    def drop(self, connection_id: str, reason: str, action: Any = None):
        """Count and log an inbound frame that is discarded without a reply."""
        relay_events_dropped_total.labels(reason=reason).inc()
        logger.debug(f"Dropped frame from {connection_id}: {reason} (action={action!r})")

    # ------------------------------------------------------------------
    # Outbound side effects
    # ------------------------------------------------------------------

    async def apply(self, connection_id: str, reaction: Reaction):
        """Perform the sends and timer changes requested by a handler."""
        if reaction.cancel_removal:
            self.cancel_removal(connection_id)

        for emission in reaction.emissions:
            message = WSEvent(type=emission.event, payload=emission.payload).model_dump(mode="json")
            kind = emission.target.kind

            if kind == TargetKind.SELF:
                await self.connections.send_to(connection_id, message)
            elif kind == TargetKind.ALL_EXCEPT_SELF:
                await self.connections.broadcast(message, exclude_id=connection_id)
            elif kind == TargetKind.ONE:
                sent = await self.connections.send_to(emission.target.connection_id, message)
                if emission.event == PRIVATE_MESSAGE:
                    relay_private_messages_total.labels(delivery="live" if sent else "undelivered").inc()

        if reaction.schedule_removal:
            self.schedule_removal(connection_id)

    # ------------------------------------------------------------------
    # Grace-period removal
    # ------------------------------------------------------------------

    def schedule_removal(self, connection_id: str):
        """Start (or restart) the grace timer for a connection."""
        self.cancel_removal(connection_id)
        self._removal_tasks[connection_id] = asyncio.create_task(
            self._expire_after_grace(connection_id),
            name=f"grace-{connection_id}"
        )

    def cancel_removal(self, connection_id: str) -> bool:
        task = self._removal_tasks.pop(connection_id, None)
        if task is None:
            return False
        task.cancel()
        logger.debug(f"Cancelled pending removal for {connection_id}")
        return True

    async def _expire_after_grace(self, connection_id: str):
        await asyncio.sleep(self.grace_period_seconds)
        if self._removal_tasks.get(connection_id) is asyncio.current_task():
            del self._removal_tasks[connection_id]
        self.engine.expire(connection_id)
        update_relay_metrics(self)

    @property
    def pending_removals(self) -> List[str]:
        return list(self._removal_tasks)

    async def shutdown(self):
        """Cancel all pending removal tasks."""
        tasks = list(self._removal_tasks.values())
        self._removal_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Relay hub stopped ({len(tasks)} pending removals cancelled)")
