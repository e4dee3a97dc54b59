"""
Operator console for the outstation

Commands:
    show                - print all breakers
    toggle <ioa>        - invert a breaker and report it spontaneously
    set <ioa> <0|1>     - open (0) or close (1) a breaker
    help                - list commands
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from outstation.engine import Outstation
from outstation.registry import state_name

logger = logging.getLogger(__name__)

HELP_TEXT = "Breaker console ready: show | toggle <ioa> | set <ioa> <0|1> | help"


@dataclass
class ConsoleResult:
    ok: bool
    message: str


def _parse_ioa(token: str) -> int:
    ioa = int(token)
    if ioa < 0:
        raise ValueError("IOA must not be negative")
    return ioa


class BreakerConsole:
    """Line-oriented console driving the outstation's breakers"""

    def __init__(self, outstation: Outstation,
                 read_line: Callable[[], str] = input,
                 write: Callable[[str], None] = print):
        self.outstation = outstation
        self.read_line = read_line
        self.write = write

    async def execute(self, line: str) -> Optional[ConsoleResult]:
        """
        Run one console line.

        Returns:
            None for a blank line, otherwise the result to show the operator
        """
        parts = line.strip().split()
        if not parts:
            return None

        command, args = parts[0].lower(), parts[1:]

        if command == 'show':
            return ConsoleResult(True, str(self.outstation.registry))

        if command == 'help':
            return ConsoleResult(True, HELP_TEXT)

        if command == 'toggle':
            if len(args) != 1:
                return ConsoleResult(False, "Usage: toggle <ioa>")
            return await self._toggle(args[0])

        if command == 'set':
            if len(args) != 2:
                return ConsoleResult(False, "Usage: set <ioa> <0|1>")
            return await self._set(args[0], args[1])

        return ConsoleResult(False, f"Unknown command: {command}. {HELP_TEXT}")

    async def _toggle(self, token: str) -> ConsoleResult:
        try:
            ioa = _parse_ioa(token)
        except ValueError:
            return ConsoleResult(False, f"Invalid IOA: {token}")

        if ioa not in self.outstation.registry:
            return ConsoleResult(False, f"Unknown IOA: {ioa}")

        closed = await self.outstation.toggle_breaker(ioa)
        return ConsoleResult(True, f"Breaker {ioa} -> {state_name(closed)}")

    async def _set(self, ioa_token: str, value_token: str) -> ConsoleResult:
        try:
            ioa = _parse_ioa(ioa_token)
        except ValueError:
            return ConsoleResult(False, f"Invalid IOA: {ioa_token}")

        if value_token not in ('0', '1'):
            return ConsoleResult(False, f"Invalid state: {value_token} (use 0 or 1)")

        if ioa not in self.outstation.registry:
            return ConsoleResult(False, f"Unknown IOA: {ioa}")

        closed = value_token == '1'
        await self.outstation.set_breaker(ioa, closed)
        return ConsoleResult(True, f"Breaker {ioa} -> {state_name(closed)}")

    async def run(self):
        """Read commands until the input stream ends"""
        loop = asyncio.get_running_loop()
        self.write(HELP_TEXT)

        while True:
            try:
                line = await loop.run_in_executor(None, self.read_line)
            except EOFError:
                logger.info("Console input closed")
                return

            result = await self.execute(line)
            if result is not None:
                self.write(result.message if result.ok else f"Error: {result.message}")
