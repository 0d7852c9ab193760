"""
Per-connection state and the table of live WebSocket connections.
"""

import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


def new_connection_id() -> str:
    return secrets.token_hex(16)


def new_peer_id() -> str:
    """Public, per-admission pseudonym shown to the other party"""
    return secrets.token_hex(8)


@dataclass
class ConnectionContext:
    """
    What the relay knows about one connection.

    Created when the socket is accepted, bound to a session on admission and
    discarded on disconnect. Passed explicitly into every relay call.

    Attributes:
        connection_id: Internal id, the registry's participant key
        session_id: Session this connection was admitted to, if any
        peer_id: Pseudonym announced to the other participant
    """
    connection_id: str = field(default_factory=new_connection_id)
    session_id: Optional[str] = None
    peer_id: Optional[str] = None

    def bind(self, session_id: str) -> str:
        self.session_id = session_id
        self.peer_id = new_peer_id()
        return self.peer_id

    def unbind(self):
        self.session_id = None
        self.peer_id = None


class ConnectionManager:
    """Manages active WebSocket connections"""

    def __init__(self):
        self.active_connections: Dict[str, Any] = {}

    def register(self, connection_id: str, websocket):
        """Store an accepted WebSocket connection"""
        self.active_connections[connection_id] = websocket

    def disconnect(self, connection_id: str):
        """Remove a WebSocket connection"""
        self.active_connections.pop(connection_id, None)

    async def send_message(self, connection_id: str, message: dict) -> bool:
        """
        Send a message to one connection.

        Returns:
            False if the connection is gone or the send failed
        """
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
        except Exception as e:
            # Peer socket died mid-send; its own handler cleans up.
            logger.warning("send_failed", connection=connection_id[:8], error=str(e))
            return False
        return True
