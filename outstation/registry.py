"""
Breaker Registry - process-wide breaker state keyed by IOA
"""
import logging
import threading
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class BreakerRegistry:
    """
    Map of information object address -> breaker state (True = CLOSED).

    Shared by every session task and the operator console; each operation
    takes the internal lock, so callers never lock around it. Whether an IOA
    may be written is decided by the caller, not here.
    """

    def __init__(self, breakers: Optional[Mapping[int, bool]] = None):
        self._lock = threading.Lock()
        self._breakers: Dict[int, bool] = dict(breakers or {})

    def get(self, ioa: int) -> Optional[bool]:
        """Get breaker state, None for an unknown IOA"""
        with self._lock:
            return self._breakers.get(ioa)

    def set(self, ioa: int, closed: bool):
        """Set breaker state"""
        with self._lock:
            self._breakers[ioa] = bool(closed)
        logger.debug(f"Breaker {ioa} -> {state_name(closed)}")

    def toggle(self, ioa: int) -> bool:
        """
        Invert breaker state

        Returns:
            The new state

        Raises:
            KeyError: IOA not in the registry (nothing is written)
        """
        with self._lock:
            new_state = not self._breakers[ioa]
            self._breakers[ioa] = new_state
        logger.debug(f"Breaker {ioa} -> {state_name(new_state)}")
        return new_state

    def contains(self, ioa: int) -> bool:
        with self._lock:
            return ioa in self._breakers

    def snapshot(self) -> List[Tuple[int, bool]]:
        """All (ioa, state) pairs in registry order, taken under one lock"""
        with self._lock:
            return list(self._breakers.items())

    def to_dict(self) -> Dict[int, bool]:
        return dict(self.snapshot())

    def __contains__(self, ioa: int) -> bool:
        return self.contains(ioa)

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)

    def __iter__(self) -> Iterator[Tuple[int, bool]]:
        return iter(self.snapshot())

    def __str__(self):
        entries = ", ".join(f"{ioa}={state_name(state)}" for ioa, state in self.snapshot())
        return f"Breakers: {{{entries}}}"


def state_name(closed: bool) -> str:
    return "CLOSED" if closed else "OPEN"
