"""
Test Suite for Breaker Registry, Sessions and Snapshot Builder
"""

import asyncio
import threading
import time

from config import DEFAULT_BREAKERS
from protocols.iec104.connection import IEC104ConnectionError
from protocols.iec104.messages import APDU, CauseOfTransmission, FieldLengths, SinglePoint, TypeID
from outstation.registry import BreakerRegistry, state_name
from outstation.sessions import Selection, SelectionTable, Session, SessionSet
from outstation.snapshot import broadcast_delta, build_delta, build_snapshot, points_per_asdu


class RecordingConnection:
    """Stands in for IEC104Connection, remembering every ASDU sent"""

    def __init__(self, remote_address="127.0.0.1:50000", fail=False, lengths=FieldLengths()):
        self.remote_address = remote_address
        self.fail = fail
        self.lengths = lengths
        self.sent = []

    async def send(self, asdu):
        if self.fail:
            raise IEC104ConnectionError("broken pipe")
        APDU.create_data(0, 0, asdu).encode(self.lengths)
        self.sent.append(asdu)


def _session(session_id, active=True, **kwargs):
    session = Session(session_id, RecordingConnection(**kwargs))
    session.data_transfer_active = active
    return session


# ============================================================================
# Breaker Registry
# ============================================================================

def test_registry_seeded_values():
    registry = BreakerRegistry(DEFAULT_BREAKERS)

    assert registry.snapshot() == [(1001, True), (1002, True), (1003, False)]
    assert len(registry) == 3
    assert registry.get(1003) is False
    assert registry.get(9999) is None


def test_registry_snapshot_one_entry_per_ioa():
    registry = BreakerRegistry(DEFAULT_BREAKERS)
    registry.set(1002, False)

    snapshot = registry.snapshot()
    assert len(snapshot) == len(registry)
    assert len({ioa for ioa, _ in snapshot}) == len(snapshot)
    assert dict(snapshot) == {1001: True, 1002: False, 1003: False}


def test_registry_snapshot_is_a_copy():
    registry = BreakerRegistry({1: True})
    snapshot = registry.snapshot()
    registry.set(1, False)

    assert snapshot == [(1, True)]


def test_registry_toggle():
    registry = BreakerRegistry(DEFAULT_BREAKERS)

    assert registry.toggle(1003) is True
    assert registry.to_dict() == {1001: True, 1002: True, 1003: True}


def test_registry_toggle_unknown_ioa():
    registry = BreakerRegistry(DEFAULT_BREAKERS)

    try:
        registry.toggle(9999)
        assert False, "toggle of unknown IOA must raise"
    except KeyError:
        pass

    assert 9999 not in registry
    assert len(registry) == 3


def test_registry_str():
    registry = BreakerRegistry({1001: True, 1003: False})
    assert str(registry) == "Breakers: {1001=CLOSED, 1003=OPEN}"
    assert state_name(True) == "CLOSED"


def test_registry_concurrent_toggles():
    """Toggles from several threads never lose an update"""
    registry = BreakerRegistry({1001: False})

    def worker():
        for _ in range(1000):
            registry.toggle(1001)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # 4000 inversions leave the breaker where it started
    assert registry.get(1001) is False


# ============================================================================
# Selection Table
# ============================================================================

def test_selection_overwrite_and_consume():
    table = SelectionTable()
    table.select(1001, True)
    table.select(1001, False)

    assert table.get(1001) is False
    assert table.consume(1001, True) is False
    assert 1001 in table

    assert table.consume(1001, False) is True
    assert 1001 not in table
    assert len(table) == 0


def test_selection_without_timeout_never_expires():
    selection = Selection(True)
    assert selection.expires_at is None
    assert selection.time_remaining() is None
    assert selection.is_expired() is False


def test_selection_expiry():
    table = SelectionTable(timeout_s=0.05)
    table.select(1001, True)
    assert 0 < table.entry(1001).time_remaining() <= 0.05

    time.sleep(0.1)

    assert table.consume(1001, True) is False
    assert len(table) == 0


def test_selection_to_dict():
    table = SelectionTable()
    table.select(1002, False)

    data = table.to_dict()
    assert list(data) == [1002]
    assert data[1002]["desired_state"] is False
    assert data[1002]["expires_at"] is None


# ============================================================================
# Sessions
# ============================================================================

def test_session_set_add_discard():
    sessions = SessionSet()
    first = Session(sessions.next_session_id(), RecordingConnection())
    second = Session(sessions.next_session_id(), RecordingConnection())
    sessions.add(first)
    sessions.add(second)

    assert (first.session_id, second.session_id) == (1, 2)
    assert len(sessions) == 2
    assert first in sessions

    assert sessions.discard(first) is True
    assert sessions.discard(first) is False
    assert sessions.get(first.session_id) is None
    assert list(sessions) == [second]


def test_session_to_dict():
    session = Session(7, RecordingConnection("10.0.0.5:2405"))
    session.selections.select(1001, True)

    data = session.to_dict()
    assert data["session_id"] == 7
    assert data["remote_address"] == "10.0.0.5:2405"
    assert data["data_transfer_active"] is False
    assert 1001 in data["selections"]
    assert str(session) == "Session 7 (10.0.0.5:2405)"


# ============================================================================
# Snapshot / Delta
# ============================================================================

def test_build_snapshot():
    (asdu,) = build_snapshot(BreakerRegistry(DEFAULT_BREAKERS), 5)

    assert asdu.type_id == TypeID.M_SP_NA_1
    assert asdu.cause == CauseOfTransmission.INTERROGATED_BY_STATION
    assert asdu.common_address == 5
    assert [(o.information_object_address, o.element.value) for o in asdu.objects] == \
        [(1001, True), (1002, True), (1003, False)]
    assert all(isinstance(o.element, SinglePoint) for o in asdu.objects)


def test_points_per_asdu_follows_field_widths():
    assert points_per_asdu() == 60
    assert points_per_asdu(FieldLengths(ioa=1, cot=1, common_address=1)) == 122
    assert points_per_asdu(FieldLengths(ioa=2, cot=1, common_address=1)) == 81


def test_build_snapshot_splits_large_registry():
    registry = BreakerRegistry({3000 + i: True for i in range(130)})

    parts = build_snapshot(registry, 1)

    assert [len(a.objects) for a in parts] == [60, 60, 10]
    assert [o.information_object_address for a in parts for o in a.objects] == \
        list(range(3000, 3130))
    for part in parts:
        assert len(APDU.create_data(0, 0, part).encode()) <= 255


def test_build_snapshot_of_empty_registry():
    assert build_snapshot(BreakerRegistry(), 1) == []


def test_build_delta():
    asdu = build_delta(1, 1003, True)

    assert asdu.cause == CauseOfTransmission.SPONTANEOUS
    assert len(asdu.objects) == 1
    assert asdu.objects[0].information_object_address == 1003
    assert asdu.objects[0].element.value is True


def test_broadcast_skips_inactive_sessions():
    active = _session(1)
    stopped = _session(2, active=False)

    delivered = asyncio.run(broadcast_delta([active, stopped], 1, 1001, False))

    assert delivered == 1
    assert len(active.connection.sent) == 1
    assert stopped.connection.sent == []


def test_broadcast_continues_after_failure():
    broken = _session(1, fail=True)
    healthy = _session(2)

    delivered = asyncio.run(broadcast_delta([broken, healthy], 1, 1002, True))

    assert delivered == 1
    assert healthy.connection.sent[0].objects[0].information_object_address == 1002


def test_broadcast_continues_after_unencodable_report():
    narrow = _session(1, lengths=FieldLengths(ioa=1))
    wide = _session(2)

    delivered = asyncio.run(broadcast_delta([narrow, wide], 1, 1001, False))

    assert delivered == 1
    assert narrow.connection.sent == []
    assert wide.connection.sent[0].objects[0].information_object_address == 1001
