"""
Master sessions and their Select-Before-Operate selection tables
"""
import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class Selection:
    """A SELECT waiting for its EXECUTE"""

    def __init__(self, desired_state: bool, timeout_s: Optional[float] = None):
        self.desired_state = desired_state
        self.selected_at = datetime.now()
        self.expires_at = (self.selected_at + timedelta(seconds=timeout_s)
                           if timeout_s is not None else None)

    def is_expired(self) -> bool:
        """Check if the selection window has passed"""
        return self.expires_at is not None and datetime.now() > self.expires_at

    def time_remaining(self) -> Optional[float]:
        """Seconds left before expiry, None when selections do not expire"""
        if self.expires_at is None:
            return None
        if self.is_expired():
            return 0.0
        return (self.expires_at - datetime.now()).total_seconds()

    def to_dict(self) -> Dict:
        return {
            "desired_state": self.desired_state,
            "selected_at": self.selected_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class SelectionTable:
    """
    IOA -> pending selection for one session.

    Only the owning session's task touches it, so it carries no lock.
    """

    def __init__(self, timeout_s: Optional[float] = None):
        self.timeout_s = timeout_s
        self._entries: Dict[int, Selection] = {}

    def select(self, ioa: int, desired_state: bool) -> Selection:
        """Record a selection, replacing any earlier one for the IOA"""
        selection = Selection(desired_state, self.timeout_s)
        self._entries[ioa] = selection
        return selection

    def entry(self, ioa: int) -> Optional[Selection]:
        """Live selection for the IOA; expired ones are dropped"""
        selection = self._entries.get(ioa)
        if selection is not None and selection.is_expired():
            logger.info(f"Selection of IOA {ioa} expired")
            del self._entries[ioa]
            return None
        return selection

    def get(self, ioa: int) -> Optional[bool]:
        selection = self.entry(ioa)
        return selection.desired_state if selection else None

    def consume(self, ioa: int, desired_state: bool) -> bool:
        """
        Remove the selection if it is live and matches desired_state.

        Returns:
            True when the caller may execute
        """
        selection = self.entry(ioa)
        if selection is None or selection.desired_state != desired_state:
            return False
        del self._entries[ioa]
        return True

    def clear(self):
        self._entries.clear()

    def __contains__(self, ioa: int) -> bool:
        return self.entry(ioa) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self) -> Dict[int, Dict]:
        return {ioa: sel.to_dict() for ioa, sel in list(self._entries.items())}


class Session:
    """One master connection as seen by the outstation"""

    def __init__(self, session_id: int, connection: Any,
                 select_timeout_s: Optional[float] = None):
        self.session_id = session_id
        self.connection = connection
        self.selections = SelectionTable(select_timeout_s)
        self.data_transfer_active = False
        self.connected_at = datetime.now()

    @property
    def remote_address(self) -> str:
        return getattr(self.connection, 'remote_address', 'unknown')

    def to_dict(self) -> Dict:
        return {
            "session_id": self.session_id,
            "remote_address": self.remote_address,
            "data_transfer_active": self.data_transfer_active,
            "connected_at": self.connected_at.isoformat(),
            "selections": self.selections.to_dict(),
        }

    def __str__(self):
        return f"Session {self.session_id} ({self.remote_address})"


class SessionSet:
    """Live sessions, used as the spontaneous broadcast target"""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[int, Session] = {}
        self._ids = itertools.count(1)

    def next_session_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def add(self, session: Session):
        with self._lock:
            self._sessions[session.session_id] = session

    def discard(self, session: Session) -> bool:
        """Remove session; False if it was already gone"""
        with self._lock:
            return self._sessions.pop(session.session_id, None) is not None

    def get(self, session_id: int) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def snapshot(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __contains__(self, session: Session) -> bool:
        with self._lock:
            return self._sessions.get(session.session_id) is session

    def __iter__(self) -> Iterator[Session]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
