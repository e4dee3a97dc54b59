"""
Breaker Outstation Configuration
Defaults for the IEC 104 outstation and master console, overridable from
environment variables and command-line flags.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

# ==================== PROTOCOL ====================

IEC104_PORT = 2404  # Standard IEC 104 TCP port

# ASDU field widths (octets)
IOA_FIELD_LENGTH = 3
COT_FIELD_LENGTH = 2
CA_FIELD_LENGTH = 2

# Connection timers (seconds)
IDLE_TIMEOUT_S = 120     # Close link with nothing received for this long
KEEP_ALIVE_S = 20        # t3: send TESTFR_ACT after this long without traffic
MAX_CLIENTS = 5

# ==================== OUTSTATION DATA ====================

# IOA -> breaker CLOSED (True) / OPEN (False)
DEFAULT_BREAKERS: Dict[int, bool] = {
    1001: True,
    1002: True,
    1003: False,
}

DEFAULT_COMMON_ADDRESS = 1  # Used for console broadcasts until a master speaks

# ==================== MASTER ====================

MASTER_COMMON_ADDRESS = 65535   # Broadcast station address
STARTDT_RETRIES = 1
CONNECTION_TIMEOUT_MS = 20_000
MESSAGE_FRAGMENT_TIMEOUT_MS = 5_000

# ==================== LOGGING ====================

LOG_LEVEL = os.getenv("LOG_LEVEL", "info")
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y.%m.%d %H:%M:%S'


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass
class OutstationConfig:
    """Settings for the outstation process"""

    bind_address: str = "127.0.0.1"
    port: int = IEC104_PORT
    ioa_length: int = IOA_FIELD_LENGTH
    cot_length: int = COT_FIELD_LENGTH
    ca_length: int = CA_FIELD_LENGTH

    breakers: Dict[int, bool] = field(default_factory=lambda: dict(DEFAULT_BREAKERS))

    # SBO policy
    select_timeout_s: Optional[float] = None   # None keeps selections until executed
    strict_execute: bool = False               # Negative confirm unmatched EXECUTE

    idle_timeout_s: float = IDLE_TIMEOUT_S
    keep_alive_s: float = KEEP_ALIVE_S
    max_clients: int = MAX_CLIENTS

    api_port: Optional[int] = None   # Status API disabled unless set
    console: bool = True
    log_level: str = LOG_LEVEL

    @classmethod
    def from_env(cls) -> 'OutstationConfig':
        """Create configuration from IEC104_* environment variables"""
        timeout = os.getenv("IEC104_SELECT_TIMEOUT_S")
        api_port = os.getenv("IEC104_API_PORT")
        return cls(
            bind_address=os.getenv("IEC104_BIND_ADDRESS", "127.0.0.1"),
            port=_env_int("IEC104_PORT", IEC104_PORT),
            ioa_length=_env_int("IEC104_IOA_LENGTH", IOA_FIELD_LENGTH),
            cot_length=_env_int("IEC104_COT_LENGTH", COT_FIELD_LENGTH),
            ca_length=_env_int("IEC104_CA_LENGTH", CA_FIELD_LENGTH),
            select_timeout_s=float(timeout) if timeout else None,
            strict_execute=os.getenv("IEC104_STRICT_EXECUTE", "0") in ("1", "true", "yes"),
            api_port=int(api_port) if api_port else None,
        )


@dataclass
class MasterConfig:
    """Settings for the interactive master console"""

    host: str = "127.0.0.1"
    port: int = IEC104_PORT
    common_address: int = MASTER_COMMON_ADDRESS
    startdt_retries: int = STARTDT_RETRIES
    connection_timeout_ms: int = CONNECTION_TIMEOUT_MS
    message_fragment_timeout_ms: int = MESSAGE_FRAGMENT_TIMEOUT_MS
    ioa_length: int = IOA_FIELD_LENGTH
    cot_length: int = COT_FIELD_LENGTH
    ca_length: int = CA_FIELD_LENGTH
    log_level: str = LOG_LEVEL

    @classmethod
    def from_env(cls) -> 'MasterConfig':
        """Create configuration from IEC104_* environment variables"""
        return cls(
            host=os.getenv("IEC104_HOST", "127.0.0.1"),
            port=_env_int("IEC104_PORT", IEC104_PORT),
            common_address=_env_int("IEC104_COMMON_ADDRESS", MASTER_COMMON_ADDRESS),
        )
