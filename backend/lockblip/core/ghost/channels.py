"""
Ghost Channel Hub - real-time event delivery
============================================

One channel per ghost session. Clients connect over WebSocket, join the
channels of sessions they hold a live grant for, and receive typed events.
Delivery is fire-and-forget: a failed send marks the connection inactive
and never touches persisted state.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from uuid import uuid4

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==========================================================================
# Event Kinds
# ==========================================================================

class GhostEvent(str, Enum):
    """Server -> client events. Names are the wire contract."""
    RECEIVE_MESSAGE = "ghost-receive-message"
    MESSAGE_DELETED = "ghost-message-deleted"
    MESSAGE_VIEW_STARTED = "ghost-message-view-started"
    SESSION_TERMINATED = "ghost-session-terminated"
    PARTNER_JOINED = "ghost-partner-joined"
    PARTNER_LEFT = "ghost-partner-left"
    SECURITY_EVENT = "ghost-security-event"


class ClientFrame(str, Enum):
    """Client -> server frames."""
    JOIN = "join"
    LEAVE = "leave"
    PING = "ping"


class ServerFrame(str, Enum):
    CONNECTED = "connected"
    JOINED = "joined"
    LEFT = "left"
    PONG = "pong"
    ERROR = "error"


@dataclass
class WSMessage:
    """WebSocket frame structure"""
    type: str
    payload: Any
    timestamp: str = field(default_factory=_now_iso)
    message_id: str = field(default_factory=lambda: str(uuid4()))

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "message_id": self.message_id,
        }, default=str)

    @classmethod
    def from_json(cls, data: str) -> 'WSMessage':
        parsed = json.loads(data)
        if not isinstance(parsed, dict) or "type" not in parsed:
            raise ValueError("Frame must be an object with a type")
        payload = parsed.get("payload")
        if payload is None:
            payload = {}
        elif not isinstance(payload, dict):
            raise ValueError("Frame payload must be an object")
        return cls(
            type=str(parsed["type"]),
            payload=payload,
            timestamp=parsed.get("timestamp", _now_iso()),
            message_id=parsed.get("message_id", str(uuid4())),
        )


# ==========================================================================
# Connection Manager
# ==========================================================================

@dataclass
class ClientConnection:
    """A connected, authenticated WebSocket client"""
    id: str
    username: str
    websocket: WebSocket
    connected_at: str = field(default_factory=_now_iso)
    channels: Set[str] = field(default_factory=set)
    is_active: bool = True


# Decides whether username may join session_id's channel
JoinAuthorizer = Callable[[str, str], Awaitable[bool]]


class GhostChannelHub:
    """
    Tracks connections and session channels and dispatches events.
    """

    def __init__(self):
        self.connections: Dict[str, ClientConnection] = {}
        self.channels: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, username: str) -> str:
        """Accept new WebSocket connection"""
        await websocket.accept()

        client_id = str(uuid4())
        async with self._lock:
            self.connections[client_id] = ClientConnection(
                id=client_id,
                username=username,
                websocket=websocket,
            )

        await self._send_to_client(client_id, WSMessage(
            type=ServerFrame.CONNECTED.value,
            payload={"client_id": client_id},
        ))
        logger.info(f"Ghost client {client_id} connected. Total: {len(self.connections)}")
        return client_id

    async def disconnect(self, client_id: str) -> None:
        """Leave every joined channel and notify partners."""
        async with self._lock:
            connection = self.connections.pop(client_id, None)
        if connection is None:
            return
        connection.is_active = False

        for session_id in list(connection.channels):
            await self.leave_channel(client_id, session_id, connection=connection)

        logger.info(f"Ghost client {client_id} disconnected. Total: {len(self.connections)}")

    # ==========================================================================
    # Channels
    # ==========================================================================

    async def join_channel(self, client_id: str, session_id: str) -> None:
        connection = self.connections.get(client_id)
        if connection is None:
            return
        async with self._lock:
            self.channels.setdefault(session_id, set()).add(client_id)
            connection.channels.add(session_id)

    async def leave_channel(
        self,
        client_id: str,
        session_id: str,
        connection: Optional[ClientConnection] = None,
    ) -> None:
        connection = connection or self.connections.get(client_id)
        async with self._lock:
            members = self.channels.get(session_id)
            if members is not None:
                members.discard(client_id)
                if not members:
                    del self.channels[session_id]
            if connection is not None:
                connection.channels.discard(session_id)

        if connection is not None:
            await self.emit(
                session_id,
                GhostEvent.PARTNER_LEFT,
                {"sessionId": session_id, "userId": connection.username},
                exclude_user=connection.username,
            )

    def members(self, session_id: str) -> Set[str]:
        """Usernames currently in a channel"""
        return {
            self.connections[cid].username
            for cid in self.channels.get(session_id, set())
            if cid in self.connections
        }

    async def close_channel(self, session_id: str) -> None:
        """Drop a channel without partner-left notifications."""
        async with self._lock:
            members = self.channels.pop(session_id, set())
            for client_id in members:
                connection = self.connections.get(client_id)
                if connection is not None:
                    connection.channels.discard(session_id)

    # ==========================================================================
    # Event Emission
    # ==========================================================================

    async def emit(
        self,
        session_id: str,
        event: GhostEvent,
        payload: Dict[str, Any],
        exclude_user: Optional[str] = None,
    ) -> int:
        """
        Send an event to every client in the session channel.

        Returns the number of clients the event was handed to.
        """
        message = WSMessage(type=GhostEvent(event).value, payload=payload)
        delivered = 0
        for client_id in list(self.channels.get(session_id, set())):
            connection = self.connections.get(client_id)
            if connection is None or not connection.is_active:
                continue
            if exclude_user is not None and connection.username == exclude_user:
                continue
            if await self._send_to_client(client_id, message):
                delivered += 1
        return delivered

    async def _send_to_client(self, client_id: str, message: WSMessage) -> bool:
        """Send message to specific client"""
        connection = self.connections.get(client_id)
        if not connection or not connection.is_active:
            return False

        try:
            if connection.websocket.client_state == WebSocketState.CONNECTED:
                await connection.websocket.send_text(message.to_json())
                return True
        except Exception as e:
            logger.error(f"Error sending to {client_id}: {e}")
            connection.is_active = False
        return False

    # ==========================================================================
    # Client Frames
    # ==========================================================================

    async def handle_message(
        self,
        client_id: str,
        message: WSMessage,
        authorize_join: JoinAuthorizer,
    ) -> None:
        """Dispatch an incoming client frame"""
        connection = self.connections.get(client_id)
        if not connection:
            return

        handlers = {
            ClientFrame.PING.value: self._on_ping,
            ClientFrame.JOIN.value: self._on_join,
            ClientFrame.LEAVE.value: self._on_leave,
        }
        handler = handlers.get(message.type)
        if handler is None:
            await self._send_to_client(client_id, WSMessage(
                type=ServerFrame.ERROR.value,
                payload={"error": f"Unknown frame type: {message.type}"},
            ))
            return
        await handler(connection, message, authorize_join)

    async def _on_ping(self, connection, message, authorize_join) -> None:
        await self._send_to_client(connection.id, WSMessage(
            type=ServerFrame.PONG.value,
            payload={"received": message.timestamp},
        ))

    async def _on_join(self, connection, message, authorize_join) -> None:
        session_id = message.payload.get("sessionId")
        if not session_id or not await authorize_join(connection.username, session_id):
            await self._send_to_client(connection.id, WSMessage(
                type=ServerFrame.ERROR.value,
                payload={"error": "No active access to this session", "sessionId": session_id},
            ))
            return
        await self.join_channel(connection.id, session_id)
        await self._send_to_client(connection.id, WSMessage(
            type=ServerFrame.JOINED.value,
            payload={"sessionId": session_id, "members": sorted(self.members(session_id))},
        ))

    async def _on_leave(self, connection, message, authorize_join) -> None:
        session_id = message.payload.get("sessionId")
        if session_id and session_id in connection.channels:
            await self.leave_channel(connection.id, session_id)
            await self._send_to_client(connection.id, WSMessage(
                type=ServerFrame.LEFT.value,
                payload={"sessionId": session_id},
            ))


# ==========================================================================
# Global Instance
# ==========================================================================

_channel_hub: Optional[GhostChannelHub] = None


def get_channel_hub() -> GhostChannelHub:
    """Get or create the global channel hub"""
    global _channel_hub
    if _channel_hub is None:
        _channel_hub = GhostChannelHub()
    return _channel_hub
