"""
IEC 104 TCP Client Wrapper
==========================

Master side of an IEC 104 link.

Features:
    - Connection with timeout and STARTDT/STOPDT handshake
    - General and counter interrogation, clock synchronization
    - Single commands with select/execute flag
    - Background receive loop reporting ASDUs and state changes to callbacks
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from protocols.iec104.messages import (
    APDUType, ASDU, CauseOfTransmission, FieldLengths, InformationObject,
    QualifierOfCounterInterrogation, QualifierOfInterrogation, SingleCommand,
    Time56, TypeID
)
from protocols.iec104.connection import IEC104Connection


logger = logging.getLogger(__name__)


class IEC104Client:
    """
    IEC 104 TCP client for communication with an outstation.

    Callbacks:
        on_asdu(asdu) - every ASDU received in an I frame
        on_closed(error) - connection gone, error is None on a clean close
        on_data_transfer(stopped) - STARTDT/STOPDT confirmed
    """

    def __init__(self, host: str, port: int = 2404,
                 lengths: FieldLengths = FieldLengths(),
                 connect_timeout_s: float = 20.0,
                 fragment_timeout_s: float = 5.0,
                 on_asdu: Optional[Callable[[ASDU], None]] = None,
                 on_closed: Optional[Callable[[Optional[Exception]], None]] = None,
                 on_data_transfer: Optional[Callable[[bool], None]] = None):
        """
        Initialize IEC 104 client.

        Args:
            host: Outstation IP address or host name
            port: IEC 104 TCP port (default 2404)
            lengths: IOA/COT/CA field widths, must match the outstation
            connect_timeout_s: TCP connect timeout (t0)
            fragment_timeout_s: Time allowed to receive the rest of a frame
        """
        self.host = host
        self.port = port
        self.lengths = lengths
        self.connect_timeout_s = connect_timeout_s
        self.fragment_timeout_s = fragment_timeout_s

        self.on_asdu = on_asdu
        self.on_closed = on_closed
        self.on_data_transfer = on_data_transfer

        self.connection: Optional[IEC104Connection] = None
        self._receiver: Optional[asyncio.Task] = None

        # Statistics
        self.stats = {
            'commands_sent': 0,
            'interrogations': 0,
            'asdus_received': 0,
            'errors': 0,
        }

    @property
    def connected(self) -> bool:
        return self.connection is not None and not self.connection.closed

    async def connect(self):
        """
        Open the TCP connection and start the receive loop.

        Raises:
            OSError / asyncio.TimeoutError if the outstation is unreachable
        """
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port),
            timeout=self.connect_timeout_s
        )
        self.connection = IEC104Connection(reader, writer, self.lengths,
                                           self.fragment_timeout_s)
        self._receiver = asyncio.create_task(self._receive_loop())
        logger.info(f"IEC 104 connected to {self.host}:{self.port}")

    async def close(self):
        """Disconnect from IEC 104 server."""
        if self.connection is not None:
            await self.connection.close()
        if self._receiver is not None:
            await asyncio.gather(self._receiver, return_exceptions=True)
            self._receiver = None
        logger.info(f"IEC 104 disconnected from {self.host}")

    async def start_data_transfer(self):
        """Send STARTDT_ACT and wait for STARTDT_CON (raises asyncio.TimeoutError)."""
        await self._require_connection().start_data_transfer(self.fragment_timeout_s)

    async def stop_data_transfer(self):
        """Send STOPDT_ACT and wait for STOPDT_CON (raises asyncio.TimeoutError)."""
        await self._require_connection().stop_data_transfer(self.fragment_timeout_s)

    # ------------------------------------------------------------
    # commands
    # ------------------------------------------------------------

    async def interrogation(self, common_address: int, qualifier: int = 20):
        """Send general interrogation (C_IC_NA_1)."""
        await self._send_command(TypeID.C_IC_NA_1, common_address, 0,
                                 QualifierOfInterrogation(qualifier))
        self.stats['interrogations'] += 1

    async def counter_interrogation(self, common_address: int, request: int = 5,
                                    freeze: int = 0):
        """Send counter interrogation (C_CI_NA_1)."""
        await self._send_command(TypeID.C_CI_NA_1, common_address, 0,
                                 QualifierOfCounterInterrogation(request, freeze))
        self.stats['interrogations'] += 1

    async def synchronize_clocks(self, common_address: int,
                                 timestamp: Optional[datetime] = None):
        """Send clock synchronization (C_CS_NA_1), defaulting to now."""
        await self._send_command(TypeID.C_CS_NA_1, common_address, 0,
                                 Time56(timestamp or datetime.now()))

    async def single_command(self, common_address: int, information_object_address: int,
                             state: bool, select: bool, qualifier: int = 0):
        """
        Send single command (C_SC_NA_1).

        Args:
            common_address: Target station
            information_object_address: IOA of the controlled point
            state: True for ON/CLOSE, False for OFF/OPEN
            select: True for SELECT, False for EXECUTE
        """
        await self._send_command(TypeID.C_SC_NA_1, common_address,
                                 information_object_address,
                                 SingleCommand(state, qualifier, select))
        self.stats['commands_sent'] += 1
        logger.info(f"Sent IEC 104 {'SELECT' if select else 'EXECUTE'}: "
                    f"IOA={information_object_address} state={state}")

    async def _send_command(self, type_id: TypeID, common_address: int, ioa: int, element):
        asdu = ASDU(type_id, CauseOfTransmission.ACTIVATION, common_address,
                    objects=[InformationObject(ioa, [element])])
        await self._require_connection().send(asdu)

    def _require_connection(self) -> IEC104Connection:
        if not self.connected:
            raise ConnectionError("Not connected")
        return self.connection

    # ------------------------------------------------------------
    # receiving
    # ------------------------------------------------------------

    async def _receive_loop(self):
        conn = self.connection
        error: Optional[Exception] = None
        try:
            while not conn.closed:
                apdu = await conn.receive()
                if apdu is None:
                    continue

                if apdu.apci.frame_type == APDUType.I_FRAME:
                    await conn.acknowledge(apdu)
                    if apdu.asdu is not None:
                        self.stats['asdus_received'] += 1
                        if self.on_asdu:
                            self.on_asdu(apdu.asdu)
                    continue

                stopped = await conn.handle_control(apdu)
                if stopped is not None and self.on_data_transfer:
                    self.on_data_transfer(stopped)

        except asyncio.IncompleteReadError:
            pass
        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            if not conn.closed:
                logger.error(f"Receive error: {e}")
                self.stats['errors'] += 1
                error = e

        await conn.close()
        if self.on_closed:
            self.on_closed(error)
