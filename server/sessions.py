"""
In-memory session registry.

The registry is the single source of truth for which chat sessions exist and
which connections belong to them. Sessions are never persisted: a restart
starts from an empty registry.

Per-session state machine::

    Created(0) -> AwaitingPeer(1) -> Full(2) -> Closed

A session is closed (removed) when it reaches the expiry horizon, counted
from creation, or when its last participant leaves.
"""

import asyncio
import re
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Set

import structlog

from .config import SESSION_CAPACITY, SESSION_EXPIRY_HOURS
from .errors import InvalidSessionId, SessionExpired, SessionFull, SessionNotFound
from .log import short_id

logger = structlog.get_logger(__name__)

SESSION_ID_BYTES = 32  # 256 bits
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{43}$")


def generate_session_id() -> str:
    """Generate a non-guessable 43-character base64url session token"""
    return secrets.token_urlsafe(SESSION_ID_BYTES)


def is_valid_session_id(session_id) -> bool:
    """Check the token shape without touching the registry"""
    return isinstance(session_id, str) and SESSION_ID_PATTERN.match(session_id) is not None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Which side of the session an admission produced"""
    INITIATOR = "initiator"
    JOINER = "joiner"


class SessionState(str, Enum):
    CREATED = "created"
    AWAITING_PEER = "awaiting_peer"
    FULL = "full"


@dataclass
class Session:
    """
    One chat invitation.

    Attributes:
        id: URL-safe session token
        created_at: Creation time, the start of the expiry horizon
        last_activity_at: Last admission or relayed message
        participants: Connection ids currently in the session
        capacity: Maximum number of participants
    """
    id: str
    created_at: datetime
    last_activity_at: datetime
    participants: Set[str] = field(default_factory=set)
    capacity: int = SESSION_CAPACITY

    @property
    def state(self) -> SessionState:
        if not self.participants:
            return SessionState.CREATED
        if len(self.participants) < self.capacity:
            return SessionState.AWAITING_PEER
        return SessionState.FULL


class SessionRegistry:
    """
    Thread-safe owner of all live sessions.

    Every mutation runs under one lock and never awaits, so two connections
    racing to join the same session always see a consistent participant count.
    """

    def __init__(
        self,
        expiry: timedelta = timedelta(hours=SESSION_EXPIRY_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            expiry: Hard lifetime of a session, measured from creation
            clock: Returns the current time; replaced in tests
        """
        if expiry <= timedelta(0):
            raise ValueError("expiry must be positive")
        self.expiry = expiry
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.RLock()

    def create(self) -> str:
        """Create an empty session and return its id"""
        with self._lock:
            session_id = generate_session_id()
            while session_id in self._sessions:
                session_id = generate_session_id()
            now = self._clock()
            self._sessions[session_id] = Session(
                id=session_id,
                created_at=now,
                last_activity_at=now,
            )
        logger.info("session_created", session=short_id(session_id))
        return session_id

    def admit(self, session_id: str, connection_id: str) -> Role:
        """
        Add a connection to a session.

        Returns:
            Role.INITIATOR if the connection is now alone in the session,
            otherwise Role.JOINER

        Raises:
            InvalidSessionId: Malformed token
            SessionNotFound: Unknown session
            SessionExpired: Session outlived the expiry horizon (it is evicted)
            SessionFull: Session already at capacity
        """
        if not is_valid_session_id(session_id):
            raise InvalidSessionId()

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound()

            now = self._clock()
            if self._is_expired(session, now):
                del self._sessions[session_id]
                logger.info("session_expired", session=short_id(session_id))
                raise SessionExpired()

            if connection_id not in session.participants:
                if len(session.participants) >= session.capacity:
                    raise SessionFull()
                session.participants.add(connection_id)

            session.last_activity_at = now
            count = len(session.participants)

        return Role.INITIATOR if count == 1 else Role.JOINER

    def touch(self, session_id: str):
        """Refresh last activity; does not extend the expiry horizon"""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity_at = self._clock()

    def can_relay(self, session_id: str) -> bool:
        """True if the session exists and has not expired, full or not"""
        if not is_valid_session_id(session_id):
            return False

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if self._is_expired(session, self._clock()):
                del self._sessions[session_id]
                logger.info("session_expired", session=short_id(session_id))
                return False
            return True

    def remove(self, session_id: str, connection_id: str) -> bool:
        """
        Remove a connection from a session, deleting the session once empty.

        Returns:
            True if the session was deleted
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.participants.discard(connection_id)
            if session.participants:
                return False
            del self._sessions[session_id]

        logger.info("session_cleaned_up", session=short_id(session_id))
        return True

    def is_member(self, session_id: str, connection_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            return session is not None and connection_id in session.participants

    def participants(self, session_id: str) -> FrozenSet[str]:
        """Snapshot of a session's participants (empty if unknown)"""
        with self._lock:
            session = self._sessions.get(session_id)
            return frozenset(session.participants) if session else frozenset()

    def state(self, session_id: str) -> Optional[SessionState]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.state if session else None

    def last_activity(self, session_id: str) -> Optional[datetime]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.last_activity_at if session else None

    def sweep(self) -> int:
        """
        Evict every expired session.

        Returns:
            Number of sessions removed
        """
        with self._lock:
            now = self._clock()
            expired = [sid for sid, s in self._sessions.items() if self._is_expired(s, now)]
            for session_id in expired:
                del self._sessions[session_id]

        for session_id in expired:
            logger.info("session_expired", session=short_id(session_id))
        return len(expired)

    async def run_sweeper(self, interval: float):
        """Background task: sweep every ``interval`` seconds until cancelled"""
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep()
            if removed:
                logger.info("sweep_completed", removed=removed, remaining=len(self))

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return now - session.created_at >= self.expiry
