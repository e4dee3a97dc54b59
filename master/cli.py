#!/usr/bin/env python3
"""
IEC 104 Master Console

Usage:
    iec104-master -H 127.0.0.1 -p 2404 -ca 1

Connects to an outstation, starts data transfer and lets the operator send
interrogations, clock synchronization and Select-Before-Operate commands.
Everything the outstation sends back is logged.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from config import LOG_DATE_FORMAT, LOG_FORMAT, MasterConfig
from protocols.iec104.client import IEC104Client
from protocols.iec104.messages import ASDU, FieldLengths
from master.actions import ActionDriver, action_menu

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> MasterConfig:
    """Build configuration from environment defaults and command-line flags"""
    defaults = MasterConfig.from_env()

    parser = argparse.ArgumentParser(
        prog="iec104-master",
        description="IEC 60870-5-104 interactive console client"
    )
    parser.add_argument("-H", "--host", required=True,
                        help="The IP/domain address of the server you want to access")
    parser.add_argument("-p", "--port", type=int, default=defaults.port,
                        help="The port to connect to (default: %(default)s)")
    parser.add_argument("-ca", "--common-address", type=int, default=defaults.common_address,
                        help="Address of the target station or the broadcast address")
    parser.add_argument("-r", "--startdt-retries", type=int, default=defaults.startdt_retries,
                        help="Send STARTDT retries (default: %(default)s)")
    parser.add_argument("-ct", "--connection-timeout", type=int,
                        default=defaults.connection_timeout_ms,
                        help="Connection timeout t0 in ms (default: %(default)s)")
    parser.add_argument("-mft", "--message-fragment-timeout", type=int,
                        default=defaults.message_fragment_timeout_ms,
                        help="Message fragment timeout in ms (default: %(default)s)")
    parser.add_argument("-iaol", "--ioa-length", type=int, choices=(1, 2, 3),
                        default=defaults.ioa_length,
                        help="Information Object Address (IOA) field length")
    parser.add_argument("-cotl", "--cot-length", type=int, choices=(1, 2),
                        default=defaults.cot_length,
                        help="Cause Of Transmission (CoT) field length")
    parser.add_argument("-cal", "--ca-length", type=int, choices=(1, 2),
                        default=defaults.ca_length,
                        help="Common Address (CA) field length")
    parser.add_argument("--log-level", default=defaults.log_level,
                        help="Logging level (default: %(default)s)")

    args = parser.parse_args(argv)
    if not 0 <= args.common_address < 1 << (8 * args.ca_length):
        parser.error(f"common address {args.common_address} does not fit in a "
                     f"{args.ca_length} octet CA field")

    return MasterConfig(
        host=args.host,
        port=args.port,
        common_address=args.common_address,
        startdt_retries=max(1, args.startdt_retries),
        connection_timeout_ms=args.connection_timeout,
        message_fragment_timeout_ms=args.message_fragment_timeout,
        ioa_length=args.ioa_length,
        cot_length=args.cot_length,
        ca_length=args.ca_length,
        log_level=args.log_level,
    )


def _log_asdu(asdu: ASDU):
    logger.info(f"Received ASDU:\n{asdu}")


def _log_closed(error: Optional[Exception]):
    logger.info(f"Received connection closed signal. Reason: {error or 'closed'}")


def _log_data_transfer(stopped: bool):
    logger.info(f"Data transfer was {'stopped' if stopped else 'started'}")


def build_client(config: MasterConfig) -> IEC104Client:
    """Create (but do not connect) a client logging everything it receives"""
    return IEC104Client(
        config.host, config.port,
        lengths=FieldLengths(config.ioa_length, config.cot_length, config.ca_length),
        connect_timeout_s=config.connection_timeout_ms / 1000,
        fragment_timeout_s=config.message_fragment_timeout_ms / 1000,
        on_asdu=_log_asdu,
        on_closed=_log_closed,
        on_data_transfer=_log_data_transfer,
    )


async def start_with_retries(client: IEC104Client, retries: int) -> bool:
    """Send STARTDT until confirmed, at most retries times"""
    for attempt in range(1, retries + 1):
        logger.info(f"Send STARTDT (try {attempt})")
        try:
            await client.start_data_transfer()
            return True
        except asyncio.TimeoutError:
            logger.warning(f"STARTDT not confirmed (try {attempt})")
    return False


async def run(config: MasterConfig) -> int:
    """Connect, start data transfer and run the action loop"""
    client = build_client(config)

    try:
        await client.connect()
    except (OSError, asyncio.TimeoutError) as e:
        logger.error(f"Unable to connect: {e}")
        return 1

    try:
        if not await start_with_retries(client, config.startdt_retries):
            logger.error("Unable to start data transfer")
            return 1

        logger.info("Successfully connected")
        driver = ActionDriver(client, config.common_address)
        loop = asyncio.get_running_loop()

        while True:
            print(action_menu())
            try:
                key = await loop.run_in_executor(None, input, "\n> ")
            except EOFError:
                break

            try:
                if not await driver.dispatch(key):
                    break
            except asyncio.TimeoutError:
                logger.warning("No confirmation from the outstation")
            except ConnectionError as e:
                logger.error(f"Connection lost: {e}")
                return 1
        return 0
    finally:
        await client.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    config = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT
    )

    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
