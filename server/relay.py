"""
Forwarding of key material and encrypted envelopes between session members.

Neither relay looks inside what it forwards. Recipients are resolved from
the registry under its lock, then messages are sent with the lock released.
"""

from datetime import datetime, timezone
from typing import List

import structlog

from .connections import ConnectionContext, ConnectionManager
from .errors import NoSession, NotAMember, SessionInvalid
from .log import short_id
from .protocol import ForwardedKey, ForwardedMessage, PeerTyping
from .sessions import SessionRegistry

logger = structlog.get_logger(__name__)


def _others(registry: SessionRegistry, ctx: ConnectionContext) -> List[str]:
    return [c for c in registry.participants(ctx.session_id) if c != ctx.connection_id]


class KeyExchangeRelay:
    """
    Forwards a party's public key to the other participant.

    Stateless: keys are never stored. A party that joins after the first
    party already published its key gets it again because the first party
    re-sends on ``peer_joined``.
    """

    def __init__(self, registry: SessionRegistry, manager: ConnectionManager):
        self.registry = registry
        self.manager = manager

    async def forward(self, ctx: ConnectionContext, public_key: str) -> int:
        """
        Send ``public_key`` verbatim to every other member of ctx's session.

        Returns:
            Number of connections it was delivered to (0 when dropped)
        """
        if not ctx.session_id or not self.registry.is_member(ctx.session_id, ctx.connection_id):
            return 0

        message = ForwardedKey(public_key=public_key).model_dump()
        delivered = 0
        for connection_id in _others(self.registry, ctx):
            if await self.manager.send_message(connection_id, message):
                delivered += 1

        logger.debug("key_forwarded", session=short_id(ctx.session_id), recipients=delivered)
        return delivered


class MessageRelay:
    """Forwards encrypted envelopes and typing notices within a session"""

    def __init__(self, registry: SessionRegistry, manager: ConnectionManager):
        self.registry = registry
        self.manager = manager

    def _check(self, ctx: ConnectionContext):
        if not ctx.session_id:
            raise NoSession()
        if not self.registry.can_relay(ctx.session_id):
            raise SessionInvalid()
        if not self.registry.is_member(ctx.session_id, ctx.connection_id):
            raise NotAMember()

    async def relay(self, ctx: ConnectionContext, envelope: dict) -> int:
        """
        Forward one envelope to the other participant(s).

        Args:
            ctx: Sender's connection context
            envelope: ``{ciphertext, nonce, auth_tag}`` as received

        Returns:
            Number of connections it was delivered to

        Raises:
            NoSession: Sender has not been admitted to a session
            SessionInvalid: Session is gone or expired
            NotAMember: Sender is not listed among the participants
        """
        self._check(ctx)
        self.registry.touch(ctx.session_id)

        message = ForwardedMessage(
            ciphertext=envelope["ciphertext"],
            nonce=envelope["nonce"],
            auth_tag=envelope["auth_tag"],
            relay_timestamp=datetime.now(timezone.utc).isoformat(),
        ).model_dump()

        delivered = 0
        for connection_id in _others(self.registry, ctx):
            if await self.manager.send_message(connection_id, message):
                delivered += 1

        logger.info("message_relayed", session=short_id(ctx.session_id), recipients=delivered)
        return delivered

    async def typing(self, ctx: ConnectionContext, is_typing: bool) -> int:
        """Forward a typing notice; silently dropped on any failure"""
        try:
            self._check(ctx)
        except (NoSession, SessionInvalid, NotAMember):
            return 0

        message = PeerTyping(peer_id=ctx.peer_id, is_typing=is_typing).model_dump()
        delivered = 0
        for connection_id in _others(self.registry, ctx):
            if await self.manager.send_message(connection_id, message):
                delivered += 1
        return delivered
