"""
Session Registry - connected observers and their roles.

Lifecycle: connected -> role_assigned -> active -> disconnected (terminal).
Nothing here is persisted; after a restart every client reconnects and joins again.
Safe for the asyncio single-threaded event loop (no extra locking needed).
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from logger import setup_logger
from visibility import Role

logger = setup_logger("sessions")

# Pending subscription kinds
PENDING_FOG_SETTINGS = "fog-settings"
PENDING_SNAPSHOT = "snapshot"

# Queued messages a session may hold before it is treated as stalled
OUTBOX_LIMIT = 1000


class SessionState(Enum):
    CONNECTED = "connected"
    ROLE_ASSIGNED = "role_assigned"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


@dataclass
class Session:
    """One client connection. `transport` is anything with an async send_json()."""
    session_id: str
    transport: Any
    role: Optional[Role] = None
    state: SessionState = SessionState.CONNECTED
    pending: Set[str] = field(default_factory=set)
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=OUTBOX_LIMIT))

    @property
    def is_open(self) -> bool:
        return self.state != SessionState.DISCONNECTED

    def enqueue(self, message: dict) -> bool:
        """Append to the FIFO outbox. Returns False for closed sessions and a full outbox."""
        if not self.is_open:
            return False
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "role": self.role.value if self.role else None,
            "state": self.state.value,
            "pending": sorted(self.pending),
        }


class SessionRegistry:
    """Tracks session identity -> role for scoped broadcasts."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def register(self, transport, session_id: Optional[str] = None) -> Session:
        session = Session(session_id=session_id or uuid.uuid4().hex, transport=transport)
        self._sessions[session.session_id] = session
        logger.info(f"Client connected: {session.session_id} ({self.count()} total)")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def assign_role(self, session_id: str, role: Role) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None or not session.is_open:
            return None
        session.role = role
        session.state = SessionState.ROLE_ASSIGNED
        logger.info(f"Client {session_id} joined as {role.value}")
        return session

    def activate(self, session_id: str):
        session = self._sessions.get(session_id)
        if session is not None and session.state == SessionState.ROLE_ASSIGNED:
            session.state = SessionState.ACTIVE

    def unregister(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session.state = SessionState.DISCONNECTED
        session.pending.clear()
        # Undelivered messages are dropped; wake the sender so it can exit.
        while not session.outbox.empty():
            session.outbox.get_nowait()
        session.outbox.put_nowait(None)
        logger.info(f"Client disconnected: {session_id} ({self.count()} remaining)")
        return session

    def add_pending(self, session_id: str, kind: str):
        session = self._sessions.get(session_id)
        if session is not None:
            session.pending.add(kind)

    def take_pending(self, session_id: str) -> Set[str]:
        session = self._sessions.get(session_id)
        if session is None:
            return set()
        pending, session.pending = session.pending, set()
        return pending

    def all_sessions(self) -> List[Session]:
        return [s for s in self._sessions.values() if s.is_open]

    def with_role(self, role: Role) -> List[Session]:
        return [s for s in self._sessions.values() if s.is_open and s.role == role]

    def count(self, role: Optional[Role] = None) -> int:
        if role is None:
            return len(self._sessions)
        return len(self.with_role(role))

    def describe(self) -> List[dict]:
        return [s.to_dict() for s in self._sessions.values()]
