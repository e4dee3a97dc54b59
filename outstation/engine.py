"""
Breaker outstation engine

Glues the IEC 104 server events to the breaker registry, the session set
and command arbitration. All shared state is passed in, so tests can build
as many independent outstations as they like.
"""

import logging
from typing import Dict, Optional

from config import DEFAULT_BREAKERS, DEFAULT_COMMON_ADDRESS
from protocols.iec104.messages import ASDU
from protocols.iec104.server import ServerEventListener
from outstation.arbitration import CommandOutcome, arbitrate
from outstation.registry import BreakerRegistry, state_name
from outstation.sessions import Session, SessionSet
from outstation.snapshot import broadcast_delta


logger = logging.getLogger(__name__)


class Outstation(ServerEventListener):
    """
    IEC 104 breaker outstation.

    One instance serves every connection of an IEC104Server; the registry
    and session set are shared across them, selections are per session.
    """

    def __init__(self, registry: Optional[BreakerRegistry] = None,
                 sessions: Optional[SessionSet] = None,
                 select_timeout_s: Optional[float] = None,
                 strict_execute: bool = False):
        """
        Args:
            registry: Breaker states (seeded with DEFAULT_BREAKERS if omitted)
            sessions: Live session set (empty if omitted)
            select_timeout_s: Expire selections after this many seconds
            strict_execute: Negatively confirm EXECUTE without matching SELECT
        """
        self.registry = registry if registry is not None else BreakerRegistry(DEFAULT_BREAKERS)
        self.sessions = sessions if sessions is not None else SessionSet()
        self.select_timeout_s = select_timeout_s
        self.strict_execute = strict_execute

        # Last CA seen from any master; target of console broadcasts
        self.last_common_address = DEFAULT_COMMON_ADDRESS

        # Statistics
        self.stats = {
            'connections': 0,
            'asdus_received': 0,
            'commands_executed': 0,
            'commands_rejected': 0,
            'send_errors': 0,
        }

    # ------------------------------------------------------------
    # server events
    # ------------------------------------------------------------

    def on_connection(self, connection) -> Session:
        session = Session(self.sessions.next_session_id(), connection, self.select_timeout_s)
        self.sessions.add(session)
        self.stats['connections'] += 1
        logger.info(f"Client connected (ID {session.session_id}) from {session.remote_address}")
        return session

    async def on_asdu(self, session: Session, asdu: ASDU) -> Optional[CommandOutcome]:
        """
        Handle one ASDU from a session.

        Returns:
            The arbitration outcome, or None if a reply could not be sent
        """
        self.last_common_address = asdu.common_address
        self.stats['asdus_received'] += 1

        try:
            outcome = await arbitrate(session, asdu, self.registry, self.sessions,
                                      self.strict_execute)
        except ConnectionError as e:
            # Cleanup follows from the close notification
            self.stats['send_errors'] += 1
            logger.warning(f"Connection {session.session_id} closed while replying: {e}")
            return None
        except ValueError as e:
            # Reply did not fit the field widths; the link itself is still usable
            self.stats['send_errors'] += 1
            logger.error(f"Connection {session.session_id} reply not encodable: {e}")
            return None

        if outcome == CommandOutcome.EXECUTED:
            self.stats['commands_executed'] += 1
        elif outcome in (CommandOutcome.UNKNOWN_IOA, CommandOutcome.UNKNOWN_TYPE,
                         CommandOutcome.EXECUTE_REJECTED):
            self.stats['commands_rejected'] += 1
        return outcome

    def on_connection_closed(self, session: Session, error: Optional[Exception] = None):
        if not self.sessions.discard(session):
            return
        pending = len(session.selections)
        session.selections.clear()
        reason = f": {error}" if error else ""
        logger.info(f"Connection {session.session_id} closed{reason} "
                    f"({pending} pending selection(s) dropped)")

    def on_data_transfer_state_changed(self, session: Session, stopped: bool):
        session.data_transfer_active = not stopped
        logger.info(f"Connection {session.session_id} data transfer "
                    f"{'stopped' if stopped else 'started'}")

    # ------------------------------------------------------------
    # operator actions
    # ------------------------------------------------------------

    async def set_breaker(self, ioa: int, closed: bool) -> int:
        """
        Set a known breaker and report it spontaneously.

        Returns:
            Number of sessions the update reached

        Raises:
            KeyError: IOA not in the registry
        """
        if ioa not in self.registry:
            raise KeyError(ioa)
        self.registry.set(ioa, closed)
        logger.info(f"Operator set breaker {ioa} {state_name(closed)}")
        return await broadcast_delta(self.sessions, self.last_common_address, ioa, closed)

    async def toggle_breaker(self, ioa: int) -> bool:
        """
        Invert a known breaker and report it spontaneously.

        Returns:
            The new state

        Raises:
            KeyError: IOA not in the registry
        """
        closed = self.registry.toggle(ioa)
        logger.info(f"Operator toggled breaker {ioa} to {state_name(closed)}")
        await broadcast_delta(self.sessions, self.last_common_address, ioa, closed)
        return closed

    def get_status(self) -> Dict:
        """Get outstation status"""
        return {
            'breakers': self.registry.to_dict(),
            'sessions': len(self.sessions),
            'last_common_address': self.last_common_address,
            'select_timeout_s': self.select_timeout_s,
            'strict_execute': self.strict_execute,
            'stats': dict(self.stats),
        }

    def __str__(self):
        return (f"Outstation breakers={len(self.registry)} "
                f"sessions={len(self.sessions)} CA={self.last_common_address}")
