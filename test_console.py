"""
Test Suite for the Outstation Operator Console
"""

import asyncio

from config import DEFAULT_BREAKERS
from protocols.iec104.messages import APDU, CauseOfTransmission, FieldLengths
from outstation.console import HELP_TEXT, BreakerConsole
from outstation.engine import Outstation
from outstation.registry import BreakerRegistry
from outstation.sessions import SessionSet


class SpontaneousRecorder:
    remote_address = "127.0.0.1:50001"

    def __init__(self, lengths=FieldLengths()):
        self.lengths = lengths
        self.sent = []

    async def send(self, asdu):
        APDU.create_data(0, 0, asdu).encode(self.lengths)
        self.sent.append(asdu)


def make_console(lines=()):
    outstation = Outstation(BreakerRegistry(DEFAULT_BREAKERS), SessionSet())
    output = []
    pending = list(lines)

    def read_line():
        if not pending:
            raise EOFError
        return pending.pop(0)

    console = BreakerConsole(outstation, read_line=read_line, write=output.append)
    return console, outstation, output


def execute(console, line):
    return asyncio.run(console.execute(line))


# ============================================================================
# Command Parsing
# ============================================================================

def test_show():
    console, _, _ = make_console()
    result = execute(console, "show")

    assert result.ok
    assert result.message == "Breakers: {1001=CLOSED, 1002=CLOSED, 1003=OPEN}"


def test_help_and_blank_line():
    console, _, _ = make_console()

    assert execute(console, "HELP").message == HELP_TEXT
    assert execute(console, "   ") is None


def test_toggle_scenario():
    """toggle 1003 closes it and every started session hears about it once"""
    console, outstation, _ = make_console()
    recorders = []
    for _ in range(2):
        recorder = SpontaneousRecorder()
        session = outstation.on_connection(recorder)
        outstation.on_data_transfer_state_changed(session, stopped=False)
        recorders.append(recorder)

    result = execute(console, "toggle 1003")

    assert result.ok
    assert result.message == "Breaker 1003 -> CLOSED"
    assert outstation.registry.to_dict() == {1001: True, 1002: True, 1003: True}
    for recorder in recorders:
        (delta,) = recorder.sent
        assert delta.cause == CauseOfTransmission.SPONTANEOUS
        assert delta.objects[0].information_object_address == 1003
        assert delta.objects[0].element.value is True


def test_set():
    console, outstation, _ = make_console()

    assert execute(console, "set 1001 0").ok
    assert outstation.registry.get(1001) is False
    assert execute(console, "set 1001 1").message == "Breaker 1001 -> CLOSED"


def test_broadcast_uses_last_common_address():
    console, outstation, _ = make_console()
    recorder = SpontaneousRecorder()
    session = outstation.on_connection(recorder)
    outstation.on_data_transfer_state_changed(session, stopped=False)
    outstation.last_common_address = 42

    execute(console, "toggle 1001")

    assert recorder.sent[0].common_address == 42


# ============================================================================
# Input Errors
# ============================================================================

def test_invalid_input_leaves_registry_untouched():
    console, outstation, _ = make_console()

    bad_lines = [
        "toggle",
        "toggle 1001 1002",
        "toggle abc",
        "toggle -5",
        "toggle 9999",
        "set 1001",
        "set 1001 2",
        "set 1001 on",
        "set xyz 1",
        "set 9999 1",
        "reboot",
    ]
    for line in bad_lines:
        result = execute(console, line)
        assert result is not None and not result.ok, line

    assert outstation.registry.to_dict() == DEFAULT_BREAKERS
    assert 9999 not in outstation.registry


def test_error_messages():
    console, _, _ = make_console()

    assert execute(console, "toggle 9999").message == "Unknown IOA: 9999"
    assert execute(console, "toggle abc").message == "Invalid IOA: abc"
    assert execute(console, "set 1001 2").message == "Invalid state: 2 (use 0 or 1)"
    assert execute(console, "frobnicate").message.startswith("Unknown command: frobnicate")


# ============================================================================
# Console Loop
# ============================================================================

def test_run_until_end_of_input():
    console, outstation, output = make_console(["show", "toggle 9999", "toggle 1002", ""])

    asyncio.run(console.run())

    assert output[0] == HELP_TEXT
    assert output[1].startswith("Breakers:")
    assert output[2] == "Error: Unknown IOA: 9999"
    assert output[3] == "Breaker 1002 -> OPEN"
    assert len(output) == 4
    assert outstation.registry.get(1002) is False


def test_run_survives_report_too_wide_for_session():
    """A session with a one-octet IOA field cannot take IOA 1002; the loop goes on"""
    console, outstation, output = make_console(["toggle 1002", "show"])
    narrow = SpontaneousRecorder(FieldLengths(ioa=1))
    session = outstation.on_connection(narrow)
    outstation.on_data_transfer_state_changed(session, stopped=False)

    asyncio.run(console.run())

    assert output[1] == "Breaker 1002 -> OPEN"
    assert output[2] == "Breakers: {1001=CLOSED, 1002=OPEN, 1003=OPEN}"
    assert narrow.sent == []
    assert session in outstation.sessions
