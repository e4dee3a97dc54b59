"""
IEC 60870-5-104 TCP Server Implementation
=========================================

Asynchronous TCP server for IEC 104 protocol.

Features:
    - Multi-client support (several masters can connect)
    - Automatic state machine management per connection
    - Keep-alive monitoring (TESTFR) and idle timeout
    - Decoded ASDUs handed to a listener, one connection at a time in order

The server knows nothing about the application: a listener object receives
connection, ASDU, data-transfer and close events (see ServerEventListener).

Usage:
    server = IEC104Server(listener, host='0.0.0.0', port=2404)
    await server.start()
    ...
    await server.stop()

Standard IEC 104 port: 2404/TCP
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from protocols.iec104.messages import APDUType, ASDU, FieldLengths, UFrameFunction
from protocols.iec104.connection import IEC104Connection


logger = logging.getLogger(__name__)


class ServerEventListener:
    """
    Callbacks the server invokes. Subclass and override what you need.

    on_connection returns an opaque session object that is passed back to
    the other callbacks for that connection.
    """

    def on_connection(self, connection: IEC104Connection) -> Any:
        return connection

    async def on_asdu(self, session: Any, asdu: ASDU):
        pass

    def on_connection_closed(self, session: Any, error: Optional[Exception]):
        pass

    def on_data_transfer_state_changed(self, session: Any, stopped: bool):
        pass


class IEC104Server:
    """
    IEC 60870-5-104 TCP Server

    Accepts TCP connections from masters and feeds their ASDUs to a listener.
    """

    def __init__(self, listener: ServerEventListener, host: str = '127.0.0.1',
                 port: int = 2404, lengths: FieldLengths = FieldLengths(),
                 name: str = 'outstation'):
        """
        Initialize IEC 104 server

        Args:
            listener: Receiver of connection and ASDU events
            host: Bind address
            port: TCP port (default 2404 is standard IEC 104, 0 picks a free one)
            lengths: IOA/COT/CA field widths
            name: Label for the server logger
        """
        self.listener = listener
        self.host = host
        self.port = port
        self.lengths = lengths

        self.logger = logging.getLogger(f"IEC104[{name}]")

        # Server state
        self.server: Optional[asyncio.AbstractServer] = None
        self.running = False
        self.connections: Dict[str, IEC104Connection] = {}
        self.connection_handlers: Dict[str, asyncio.Task] = {}

        # Configuration
        self.idle_timeout_s = 120
        self.keep_alive_s = 20
        self.fragment_timeout_s = 5.0
        self.max_clients = 5

    async def start(self):
        """Start IEC 104 TCP server"""
        try:
            self.server = await asyncio.start_server(
                self._handle_client,
                self.host,
                self.port
            )
        except OSError as e:
            self.logger.error(f"Failed to start IEC 104 server: {e}")
            raise

        self.running = True
        addr = self.server.sockets[0].getsockname()
        self.port = addr[1]
        self.logger.info(f"IEC 104 server started on {addr[0]}:{addr[1]}")

    async def stop(self):
        """Stop IEC 104 TCP server"""
        self.running = False

        if self.server:
            self.server.close()

        for conn in list(self.connections.values()):
            await conn.close()

        handlers = [h for h in self.connection_handlers.values() if h]
        for handler in handlers:
            handler.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)

        # Waits for open connections on newer interpreters, so only after closing them
        if self.server:
            await self.server.wait_closed()

        self.logger.info("IEC 104 server stopped")

    async def serve_forever(self):
        """Block until the server is closed"""
        if self.server is None:
            await self.start()
        await self.server.serve_forever()

    async def _handle_client(self, reader: asyncio.StreamReader,
                             writer: asyncio.StreamWriter):
        """
        Handle new client connection

        This coroutine manages a single client from connection to disconnection.
        """
        addr = writer.get_extra_info('peername')
        addr_str = f"{addr[0]}:{addr[1]}"

        if len(self.connections) >= self.max_clients:
            self.logger.warning(f"Connection rejected from {addr_str}: max clients reached")
            writer.close()
            await writer.wait_closed()
            return

        conn = IEC104Connection(reader, writer, self.lengths, self.fragment_timeout_s)
        self.connections[addr_str] = conn
        self.connection_handlers[addr_str] = asyncio.current_task()
        self.logger.info(f"Client connected: {addr_str}")

        session = self.listener.on_connection(conn)
        error: Optional[Exception] = None

        try:
            while self.running and conn.state.is_connected():
                if conn.state.check_timeout(self.idle_timeout_s):
                    self.logger.warning(f"Client {addr_str} timeout")
                    error = TimeoutError(f"No data from {addr_str} for {self.idle_timeout_s}s")
                    break

                if conn.state.need_testfr(self.keep_alive_s):
                    await conn.send_u_frame(UFrameFunction.TESTFR_ACT)

                apdu = await conn.receive(timeout=self.keep_alive_s)
                if apdu is None:
                    continue

                await self._handle_apdu(apdu, conn, session)

        except asyncio.IncompleteReadError:
            # Connection closed by client
            pass
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            self.logger.error(f"Client {addr_str} error: {e}")
            conn.state.on_error(str(e))
            error = e

        finally:
            self.logger.info(f"Client disconnected: {addr_str}")
            self.connections.pop(addr_str, None)
            self.connection_handlers.pop(addr_str, None)
            await conn.close()
            self.listener.on_connection_closed(session, error)

    async def _handle_apdu(self, apdu, conn: IEC104Connection, session):
        """Handle received APDU from client"""
        if apdu.apci.frame_type == APDUType.I_FRAME:
            await conn.acknowledge(apdu)

            if not conn.is_active():
                self.logger.warning(
                    f"I frame from {conn.remote_address} before STARTDT, ignored")
                return

            if apdu.asdu:
                await self.listener.on_asdu(session, apdu.asdu)
            return

        stopped = await conn.handle_control(apdu)
        if stopped is not None:
            self.logger.info(f"Client {conn.remote_address} "
                             f"{'stopped' if stopped else 'started'} data transfer")
            self.listener.on_data_transfer_state_changed(session, stopped)

    def get_status(self) -> dict:
        """Get server status"""
        return {
            'running': self.running,
            'port': self.port,
            'connections': len(self.connections),
            'clients': [
                {
                    'address': addr,
                    'state': conn.state.state.name,
                    'send_seq': conn.state.send_sequence,
                    'recv_seq': conn.state.recv_sequence,
                }
                for addr, conn in self.connections.items()
            ]
        }

    def __str__(self):
        return f"IEC104Server({self.host}:{self.port}) clients={len(self.connections)}"
