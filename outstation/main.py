#!/usr/bin/env python3
"""
IEC 104 Breaker Outstation

Usage:
    python3 -m outstation.main -a 0.0.0.0 -p 2404
    iec104-outstation --select-timeout 10 --api-port 8080

Serves breakers 1001-1003 to IEC 104 masters with Select-Before-Operate
control. Type 'help' at the console for operator commands.
"""

import argparse
import asyncio
import logging
import sys
from typing import Dict, List, Optional

from config import LOG_DATE_FORMAT, LOG_FORMAT, OutstationConfig
from protocols.iec104.messages import FieldLengths
from protocols.iec104.server import IEC104Server
from outstation.console import BreakerConsole
from outstation.engine import Outstation
from outstation.registry import BreakerRegistry

logger = logging.getLogger(__name__)


def _breaker_arg(value: str):
    try:
        ioa, state = value.split('=', 1)
        if state not in ('0', '1'):
            raise ValueError(state)
        return int(ioa), state == '1'
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected IOA=0|1, got {value!r}")


def parse_args(argv: Optional[List[str]] = None) -> OutstationConfig:
    """Build configuration from environment defaults and command-line flags"""
    defaults = OutstationConfig.from_env()

    parser = argparse.ArgumentParser(
        prog="iec104-outstation",
        description="IEC 60870-5-104 breaker outstation with Select-Before-Operate control"
    )
    parser.add_argument("-a", "--address", default=defaults.bind_address,
                        help="The bind address (default: %(default)s)")
    parser.add_argument("-p", "--port", type=int, default=defaults.port,
                        help="The port to listen on (default: %(default)s)")
    parser.add_argument("-iaol", "--ioa-length", type=int, choices=(1, 2, 3),
                        default=defaults.ioa_length,
                        help="Information Object Address (IOA) field length")
    parser.add_argument("-cotl", "--cot-length", type=int, choices=(1, 2),
                        default=defaults.cot_length,
                        help="Cause Of Transmission (CoT) field length")
    parser.add_argument("-cal", "--ca-length", type=int, choices=(1, 2),
                        default=defaults.ca_length,
                        help="Common Address (CA) field length")
    parser.add_argument("--breaker", action="append", type=_breaker_arg, metavar="IOA=0|1",
                        help="Seed a breaker (repeatable, replaces the defaults)")
    parser.add_argument("--select-timeout", type=float, default=defaults.select_timeout_s,
                        help="Expire a SELECT after this many seconds (default: never)")
    parser.add_argument("--strict-execute", action="store_true",
                        default=defaults.strict_execute,
                        help="Negatively confirm EXECUTE without a matching SELECT")
    parser.add_argument("--api-port", type=int, default=defaults.api_port,
                        help="Serve the read-only status API on this port")
    parser.add_argument("--no-console", action="store_true",
                        help="Do not read operator commands from stdin")
    parser.add_argument("--log-level", default=defaults.log_level,
                        help="Logging level (default: %(default)s)")

    args = parser.parse_args(argv)

    breakers: Dict[int, bool] = dict(args.breaker) if args.breaker else defaults.breakers
    limit = 1 << (8 * args.ioa_length)
    too_wide = sorted(ioa for ioa in breakers if not 0 <= ioa < limit)
    if too_wide:
        parser.error(f"breaker IOA(s) {too_wide} do not fit in a {args.ioa_length} octet "
                     f"IOA field (0-{limit - 1})")

    return OutstationConfig(
        bind_address=args.address,
        port=args.port,
        ioa_length=args.ioa_length,
        cot_length=args.cot_length,
        ca_length=args.ca_length,
        breakers=breakers,
        select_timeout_s=args.select_timeout,
        strict_execute=args.strict_execute,
        api_port=args.api_port,
        console=not args.no_console,
        log_level=args.log_level,
    )


def build_server(config: OutstationConfig, outstation: Outstation) -> IEC104Server:
    """Create (but do not start) the IEC 104 server for an outstation"""
    lengths = FieldLengths(config.ioa_length, config.cot_length, config.ca_length)
    server = IEC104Server(outstation, host=config.bind_address, port=config.port,
                          lengths=lengths)
    server.idle_timeout_s = config.idle_timeout_s
    server.keep_alive_s = config.keep_alive_s
    server.max_clients = config.max_clients
    return server


async def run(config: OutstationConfig):
    """Run the outstation until cancelled"""
    outstation = Outstation(BreakerRegistry(config.breakers),
                            select_timeout_s=config.select_timeout_s,
                            strict_execute=config.strict_execute)
    server = build_server(config, outstation)

    logger.info("### Starting IEC-104 Outstation ###")
    logger.info(f"Bind Address: {config.bind_address} Port: {config.port}")
    await server.start()

    tasks = [asyncio.create_task(server.serve_forever())]
    if config.console:
        tasks.append(asyncio.create_task(BreakerConsole(outstation).run()))
    if config.api_port is not None:
        from outstation.api import serve_api
        tasks.append(asyncio.create_task(
            serve_api(outstation, config.bind_address, config.api_port)))

    try:
        # Console EOF only ends the console task; the server keeps going
        await tasks[0]
    finally:
        for task in tasks[1:]:
            task.cancel()
        await server.stop()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    config = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT
    )

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
    except OSError as e:
        logger.error(f"Unable to start server: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
