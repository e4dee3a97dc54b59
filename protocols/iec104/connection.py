"""
IEC 60870-5-104 Connection State Machine
========================================

Manages the lifecycle of an IEC 104 connection between outstation and master.

Connection states:
    IDLE - Waiting for connection
    CONNECTED - TCP connected but data transfer not started
    STARTED - Data transfer active (STARTDT confirmed)
    STOPPED - STOPDT confirmed, TCP still open
    ERROR - Connection error

Sequence:
    1. Master connects (CONNECTED)
    2. Master sends STARTDT_ACT
    3. Outstation responds STARTDT_CON (STARTED)
    4. Data exchange (I frames acknowledged with S frames)
    5. Master sends STOPDT_ACT, outstation responds STOPDT_CON (STOPPED)
    6. Close connection (IDLE)

Keep-alive:
    - Send TESTFR_ACT if nothing was sent for keep_alive_s (t3)
    - Expect TESTFR_CON response
    - Give up after idle_timeout_s with nothing received
"""

from enum import Enum
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional
import asyncio
import logging

from protocols.iec104.messages import (
    APCI, APDU, APDUType, ASDU, CauseOfTransmission, FieldLengths, START_BYTE,
    UFrameFunction
)


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """IEC 104 connection states"""
    IDLE = 0            # No connection
    CONNECTED = 1       # TCP connected, waiting for STARTDT
    STARTED = 2         # Data transfer active
    STOPPED = 3         # STOPDT confirmed
    ERROR = 4           # Connection error


class IEC104ConnectionError(ConnectionError):
    """Raised when a frame cannot be delivered to the peer"""


@dataclass
class ConnectionStateMachine:
    """
    IEC 104 connection state machine

    Attributes:
        remote_address: Peer TCP address
        send_sequence: Outgoing I frame sequence (0-32767)
        recv_sequence: Next expected incoming I frame sequence (0-32767)
        state: Current connection state
        last_send_time: Timestamp of last sent frame
        last_recv_time: Timestamp of last received frame
        testfr_active: Whether we're waiting for TESTFR_CON
    """

    remote_address: str
    send_sequence: int = 0
    recv_sequence: int = 0
    state: ConnectionState = ConnectionState.IDLE
    last_send_time: datetime = None
    last_recv_time: datetime = None
    testfr_active: bool = False

    def __post_init__(self):
        self.last_send_time = datetime.now()
        self.last_recv_time = datetime.now()

    def on_connected(self) -> bool:
        """Handle TCP connection established"""
        if self.state == ConnectionState.IDLE:
            self.state = ConnectionState.CONNECTED
            self.send_sequence = 0
            self.recv_sequence = 0
            self.last_recv_time = datetime.now()
            return True
        return False

    def on_startdt(self) -> bool:
        """Handle STARTDT activation (outstation) or confirmation (master)"""
        if self.state in (ConnectionState.CONNECTED, ConnectionState.STOPPED):
            self.state = ConnectionState.STARTED
            return True
        return False

    def on_stopdt(self) -> bool:
        """Handle STOPDT activation (outstation) or confirmation (master)"""
        if self.state == ConnectionState.STARTED:
            self.state = ConnectionState.STOPPED
            return True
        return False

    def on_testfr_con(self) -> bool:
        """Handle TESTFR confirmation from peer"""
        if self.testfr_active:
            self.testfr_active = False
            return True
        return False

    def on_frame_received(self):
        """Update timestamp when any frame is received"""
        self.last_recv_time = datetime.now()

    def on_data_received(self):
        """Advance receive sequence after an I frame"""
        self.recv_sequence = (self.recv_sequence + 1) & 0x7FFF

    def on_data_sent(self):
        """Update sequence and timestamp after an I frame"""
        self.send_sequence = (self.send_sequence + 1) & 0x7FFF
        self.last_send_time = datetime.now()

    def on_frame_sent(self):
        """Update timestamp after an S or U frame"""
        self.last_send_time = datetime.now()

    def is_active(self) -> bool:
        """Check if connection is in active data transfer state"""
        return self.state == ConnectionState.STARTED

    def is_connected(self) -> bool:
        """Check if connection is TCP connected"""
        return self.state in (ConnectionState.CONNECTED, ConnectionState.STARTED,
                              ConnectionState.STOPPED)

    def check_timeout(self, idle_timeout_s: float = 120) -> bool:
        """
        Check for receive timeout

        Returns:
            True if timeout exceeded, False otherwise
        """
        if self.state == ConnectionState.IDLE:
            return False

        elapsed = (datetime.now() - self.last_recv_time).total_seconds()
        return elapsed > idle_timeout_s

    def need_testfr(self, keep_alive_s: float = 20) -> bool:
        """Check if TESTFR_ACT should be sent, and mark it outstanding"""
        if not self.is_connected() or self.testfr_active:
            return False

        idle = min((datetime.now() - self.last_send_time).total_seconds(),
                   (datetime.now() - self.last_recv_time).total_seconds())
        if idle > keep_alive_s:
            self.testfr_active = True
            return True
        return False

    def on_error(self, error: str):
        """Handle connection error"""
        self.state = ConnectionState.ERROR
        logger.warning(f"IEC104 Connection Error [{self.remote_address}]: {error}")

    def disconnect(self):
        """Mark connection as disconnected"""
        self.state = ConnectionState.IDLE

    def __str__(self):
        return (f"IEC104[{self.remote_address}] state={self.state.name} "
                f"tx={self.send_sequence} rx={self.recv_sequence} "
                f"testfr={self.testfr_active}")


class IEC104Connection:
    """
    One open IEC 104 link, used by both the server and the client side.

    Owns the stream pair and the state machine; all writes are serialized so
    that I frames keep their sequence numbers in order.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 lengths: FieldLengths = FieldLengths(),
                 fragment_timeout_s: float = 5.0):
        self.reader = reader
        self.writer = writer
        self.lengths = lengths
        self.fragment_timeout_s = fragment_timeout_s

        peer = writer.get_extra_info('peername')
        remote = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self.state = ConnectionStateMachine(remote)
        self.state.on_connected()

        self._write_lock = asyncio.Lock()
        self._pending: Dict[UFrameFunction, asyncio.Future] = {}
        self.closed = False

    @property
    def remote_address(self) -> str:
        return self.state.remote_address

    def is_active(self) -> bool:
        return self.state.is_active()

    # ------------------------------------------------------------
    # sending
    # ------------------------------------------------------------

    async def _write(self, apdu: APDU):
        if self.closed:
            raise IEC104ConnectionError(f"Connection to {self.remote_address} is closed")
        data = apdu.encode(self.lengths)
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise IEC104ConnectionError(
                f"Failed to send to {self.remote_address}: {e}") from e

    async def send(self, asdu: ASDU):
        """Send ASDU in an I frame"""
        async with self._write_lock:
            apdu = APDU.create_data(self.state.send_sequence, self.state.recv_sequence, asdu)
            await self._write(apdu)
            self.state.on_data_sent()

    async def send_confirmation(self, asdu: ASDU):
        """Positive activation (or deactivation) confirmation of a request"""
        if asdu.cause == CauseOfTransmission.DEACTIVATION:
            cause = CauseOfTransmission.DEACTIVATION_CON
        else:
            cause = CauseOfTransmission.ACTIVATION_CON
        await self.send(asdu.reply(cause))

    async def send_negative_confirmation(self, asdu: ASDU, cause: CauseOfTransmission):
        """Negative confirmation of a request, tagged with the rejection cause"""
        await self.send(asdu.reply(cause, negative=True))

    async def send_activation_termination(self, asdu: ASDU):
        await self.send(asdu.reply(CauseOfTransmission.ACTIVATION_TERMINATION))

    async def send_u_frame(self, function: UFrameFunction):
        async with self._write_lock:
            await self._write(APDU.create_u_frame(function))
            self.state.on_frame_sent()

    async def send_supervisory(self):
        """Acknowledge received I frames"""
        async with self._write_lock:
            await self._write(APDU.create_supervisory(self.state.recv_sequence))
            self.state.on_frame_sent()

    async def _request(self, act: UFrameFunction, con: UFrameFunction, timeout: float):
        future = asyncio.get_running_loop().create_future()
        self._pending[con] = future
        try:
            await self.send_u_frame(act)
            await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(con, None)

    async def start_data_transfer(self, timeout: float = 5.0):
        """Send STARTDT_ACT and wait for STARTDT_CON (master side)"""
        await self._request(UFrameFunction.STARTDT_ACT, UFrameFunction.STARTDT_CON, timeout)

    async def stop_data_transfer(self, timeout: float = 5.0):
        """Send STOPDT_ACT and wait for STOPDT_CON (master side)"""
        await self._request(UFrameFunction.STOPDT_ACT, UFrameFunction.STOPDT_CON, timeout)

    # ------------------------------------------------------------
    # receiving
    # ------------------------------------------------------------

    async def receive(self, timeout: Optional[float] = None) -> Optional[APDU]:
        """
        Read one APDU from the stream.

        Returns:
            The decoded APDU, or None when no frame started within timeout or
            the control field could not be decoded (it is logged and skipped).
            An I frame whose ASDU cannot be decoded comes back without an ASDU
            so it is still acknowledged.

        Raises:
            asyncio.IncompleteReadError / ConnectionError when the peer is gone
        """
        try:
            start = await asyncio.wait_for(self.reader.readexactly(1), timeout=timeout)
        except asyncio.TimeoutError:
            return None

        if start[0] != START_BYTE:
            # Resync one byte at a time
            logger.warning(f"Invalid start byte 0x{start[0]:02x} from {self.remote_address}")
            return None

        length = (await asyncio.wait_for(self.reader.readexactly(1),
                                         timeout=self.fragment_timeout_s))[0]
        body = await asyncio.wait_for(self.reader.readexactly(length),
                                      timeout=self.fragment_timeout_s)
        self.state.on_frame_received()

        try:
            apci, _ = APCI.decode(body[:4])
        except ValueError as e:
            logger.warning(f"Invalid APDU from {self.remote_address}: {e}")
            return None

        if apci.frame_type != APDUType.I_FRAME or len(body) == 4:
            return APDU(apci)

        try:
            return APDU(apci, ASDU.decode(body[4:], self.lengths))
        except ValueError as e:
            # Still counted as an I frame so the sequence numbers stay aligned
            logger.warning(f"Undecodable ASDU from {self.remote_address}: {e}")
            return APDU(apci)

    async def acknowledge(self, apdu: APDU):
        """Account for a received I frame and send an S frame"""
        self.state.on_data_received()
        await self.send_supervisory()

    async def handle_control(self, apdu: APDU) -> Optional[bool]:
        """
        Handle U and S frames.

        Returns:
            True/False when data transfer stopped/started, otherwise None
        """
        if apdu.apci.frame_type != APDUType.U_FRAME:
            return None

        u_func = apdu.apci.u_function
        pending = self._pending.get(u_func)
        if pending is not None and not pending.done():
            pending.set_result(u_func)

        if u_func == UFrameFunction.STARTDT_ACT:
            self.state.on_startdt()
            await self.send_u_frame(UFrameFunction.STARTDT_CON)
            return False

        elif u_func == UFrameFunction.STOPDT_ACT:
            self.state.on_stopdt()
            await self.send_u_frame(UFrameFunction.STOPDT_CON)
            return True

        elif u_func == UFrameFunction.STARTDT_CON:
            if self.state.on_startdt():
                return False

        elif u_func == UFrameFunction.STOPDT_CON:
            if self.state.on_stopdt():
                return True

        elif u_func == UFrameFunction.TESTFR_ACT:
            await self.send_u_frame(UFrameFunction.TESTFR_CON)

        elif u_func == UFrameFunction.TESTFR_CON:
            self.state.on_testfr_con()

        return None

    async def close(self):
        """Close the TCP stream"""
        if self.closed:
            return
        self.closed = True
        self.state.disconnect()
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def __str__(self):
        return str(self.state)
