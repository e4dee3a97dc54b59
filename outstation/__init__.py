"""
IEC 104 breaker outstation: registry, sessions, command arbitration,
operator console and status API.
"""

from outstation.arbitration import CommandOutcome, arbitrate
from outstation.engine import Outstation
from outstation.registry import BreakerRegistry
from outstation.sessions import Selection, SelectionTable, Session, SessionSet

__all__ = [
    'BreakerRegistry',
    'CommandOutcome',
    'Outstation',
    'Selection',
    'SelectionTable',
    'Session',
    'SessionSet',
    'arbitrate',
]
