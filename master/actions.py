"""
Master console actions

Each key maps to one request sent through an IEC104Client. SELECT and
EXECUTE ask the operator for the breaker IOA and the desired state.
"""

import asyncio
import logging
from typing import Callable, Dict

from protocols.iec104.client import IEC104Client

logger = logging.getLogger(__name__)

QUIT_KEY = 'q'

# key -> description, in menu order
ACTIONS: Dict[str, str] = {
    'i': "interrogation C_IC_NA_1",
    'ci': "counter interrogation C_CI_NA_1",
    'c': "synchronize clocks C_CS_NA_1",
    's': "single command SELECT (SBO)",
    'e': "single command EXECUTE (SBO)",
    'p': "STOPDT act",
    't': "STARTDT act",
    QUIT_KEY: "quit the application",
}

IOA_PROMPT = "Enter breaker IOA (e.g. 1001, 1002, 1003):"
STATE_PROMPT = "Enter state (1 = CLOSE / ON, 0 = OPEN / OFF):"


def action_menu() -> str:
    lines = ["", "------------------"]
    lines += [f"{key:>3} - {description}" for key, description in ACTIONS.items()]
    lines.append("------------------")
    return "\n".join(lines)


class ActionDriver:
    """Turns action keys into client requests"""

    def __init__(self, client: IEC104Client, common_address: int,
                 read_line: Callable[[], str] = input,
                 write: Callable[[str], None] = print):
        self.client = client
        self.common_address = common_address
        self.read_line = read_line
        self.write = write

    async def prompt(self, text: str) -> str:
        self.write(text)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.read_line)

    async def dispatch(self, key: str) -> bool:
        """
        Run the action bound to key.

        Returns:
            False when the operator asked to quit, True otherwise

        Raises:
            ConnectionError: the link is gone
            asyncio.TimeoutError: STARTDT/STOPDT not confirmed in time
        """
        key = key.strip().lower()
        ca = self.common_address

        if key == QUIT_KEY:
            return False

        if key == 'i':
            logger.info("** Sending general interrogation")
            await self.client.interrogation(ca, qualifier=20)
        elif key == 'ci':
            logger.info("** Sending counter interrogation")
            await self.client.counter_interrogation(ca, request=5, freeze=0)
        elif key == 'c':
            logger.info("** Sending clock sync")
            await self.client.synchronize_clocks(ca)
        elif key in ('s', 'e'):
            await self._single_command(select=(key == 's'))
        elif key == 'p':
            await self.client.stop_data_transfer()
        elif key == 't':
            await self.client.start_data_transfer()
        elif key:
            self.write(f"Unknown action: {key}")
        return True

    async def _single_command(self, select: bool):
        token = (await self.prompt(IOA_PROMPT)).strip()
        try:
            ioa = int(token)
        except ValueError:
            self.write(f"Invalid IOA: {token}")
            return

        desired = (await self.prompt(STATE_PROMPT)).strip() == '1'
        logger.info(f"** {'SELECT' if select else 'EXECUTE'} breaker IOA={ioa} "
                    f"state={'CLOSE' if desired else 'OPEN'}")
        await self.client.single_command(self.common_address, ioa, desired, select)
