"""
Party-side chat protocol.

ChatParty is the state one chat participant keeps: its session, its role,
and the CryptoEngine holding its keys. It speaks the relay's JSON frames but
owns no socket: ``handle()`` takes one inbound frame and returns the frames
to send back, so the same logic drives the terminal client and the tests.
"""

from typing import List, Optional, Tuple

from crypto.engine import CryptoEngine
from crypto.envelope import EncryptedEnvelope
from crypto.primitives import AuthenticationFailed, CryptoError, b64encode, b64decode


class ChatParty:
    """
    One participant of a two-party encrypted chat.

    Attributes:
        engine: Key material for the current session
        session_id: Session we were admitted to
        role: "initiator" or "joiner"
        link: Shareable link, only handed to the party waiting alone
        notices: (kind, text) pairs for the UI; kind is one of
            "system", "message", "warning", "error", "typing"
    """

    def __init__(self, engine: Optional[CryptoEngine] = None):
        self.engine = engine or CryptoEngine()
        self.session_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.role: Optional[str] = None
        self.link: Optional[str] = None
        self.peer_present = False
        self.encryption_announced = False
        self.notices: List[Tuple[str, str]] = []

    # Outbound requests

    def create_request(self) -> dict:
        return {"type": "create_session"}

    def join_request(self, session_id: str) -> dict:
        return {"type": "join_session", "session_id": session_id}

    def typing_request(self, is_typing: bool) -> dict:
        return {"type": "typing", "is_typing": is_typing}

    async def compose(self, text: str) -> dict:
        """
        Encrypt a chat message for the relay.

        Raises:
            NotReady: If the key exchange has not completed
        """
        envelope = await self.engine.encrypt(text.encode("utf-8"))
        return {"type": "message", **envelope.to_dict()}

    # Inbound frames

    async def handle(self, event: dict) -> List[dict]:
        """
        Process one frame from the relay.

        Returns:
            Frames to send back to the relay (possibly none)
        """
        kind = event.get("type")
        handler = getattr(self, f"_on_{kind}", None)
        if handler is None:
            return []
        return await handler(event)

    async def _on_session_created(self, event: dict) -> List[dict]:
        self._enter(event)
        self.notify("system", "Chat session created. Share the link to invite someone.")
        self.notify("system", "Waiting for someone to join...")
        # Nobody to send to yet; the key goes out when a peer joins.
        await self.engine.generate_key_pair()
        return []

    async def _on_session_joined(self, event: dict) -> List[dict]:
        self._enter(event)
        if self.role == "initiator":
            self.notify("system", "Chat session created. Share the link to invite someone.")
            self.notify("system", "Waiting for someone to join...")
        else:
            self.peer_present = True
            self.notify("system", "Joined chat session. Setting up encryption...")

        public_key = await self.engine.generate_key_pair()
        return [self._key_frame(public_key)]

    async def _on_peer_joined(self, event: dict) -> List[dict]:
        self.peer_present = True
        self.notify("system", "Someone joined the chat")
        if self.engine.public_key is None:
            return []
        # Late joiner missed our first key_exchange; send it again.
        return [self._key_frame(self.engine.public_key)]

    async def _on_peer_left(self, event: dict) -> List[dict]:
        self.peer_present = False
        self.notify("system", "Other user disconnected")
        # A new peer means a new exchange; start over with fresh keys.
        self.engine.reset()
        self.encryption_announced = False
        await self.engine.generate_key_pair()
        return []

    async def _on_key_exchange(self, event: dict) -> List[dict]:
        replies = []
        if not self.engine.has_key_pair():
            public_key = await self.engine.generate_key_pair()
            replies.append(self._key_frame(public_key))

        try:
            peer_key = b64decode(event.get("public_key", ""))
            await self.engine.derive_shared_key(peer_key)
        except (ValueError, CryptoError) as e:
            self.notify("warning", f"Key exchange failed: {e}")
            return replies

        if not self.encryption_announced:
            self.encryption_announced = True
            self.notify("system", "End-to-end encryption is now active")
        return replies

    async def _on_message(self, event: dict) -> List[dict]:
        try:
            envelope = EncryptedEnvelope.from_dict(event)
            plaintext = await self.engine.decrypt(envelope)
        except (KeyError, ValueError, AuthenticationFailed):
            self.notify("warning", "Failed to decrypt a message")
            return []
        except CryptoError as e:
            self.notify("warning", f"Failed to decrypt a message: {e}")
            return []

        self.notify("message", plaintext.decode("utf-8", errors="replace"))
        return []

    async def _on_peer_typing(self, event: dict) -> List[dict]:
        self.notify("typing", "Someone is typing..." if event.get("is_typing") else "")
        return []

    async def _on_error(self, event: dict) -> List[dict]:
        self.notify("error", event.get("message", "Unknown error"))
        return []

    async def _on_pong(self, event: dict) -> List[dict]:
        return []

    # Helpers

    def notify(self, kind: str, text: str):
        self.notices.append((kind, text))

    def drain_notices(self) -> List[Tuple[str, str]]:
        notices, self.notices = self.notices, []
        return notices

    def _enter(self, event: dict):
        if self.session_id and self.session_id != event.get("session_id"):
            self.engine.reset()
            self.encryption_announced = False
        self.session_id = event.get("session_id")
        self.peer_id = event.get("peer_id")
        self.role = event.get("role")
        self.link = event.get("link")

    @staticmethod
    def _key_frame(public_key: bytes) -> dict:
        return {"type": "key_exchange", "public_key": b64encode(public_key)}
