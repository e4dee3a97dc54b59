"""
IEC 60870-5-104 Protocol Implementation
========================================

IEC 60870-5-104 is the international standard for telecontrol over TCP/IP,
used between substation outstations (RTUs) and control-centre masters.

This module implements:
    - APCI framing (I, S and U frames) with sequence counters
    - ASDU encoding/decoding with configurable IOA/COT/CA field widths
    - The information elements used for breaker status and control
      (single point, single command, interrogation qualifiers, CP56Time2a)
    - Connection state machine with STARTDT/STOPDT and TESTFR keep-alive
    - An asyncio server that hands decoded ASDUs to a listener
    - An asyncio client for the master side

Server behavior:
    - Acknowledges every I frame with an S frame
    - Ignores I frames received before STARTDT
    - Closes connections idle for longer than the idle timeout
"""

from protocols.iec104.messages import (
    APDU, ASDU, CauseOfTransmission, FieldLengths, InformationObject,
    SingleCommand, SinglePoint, TypeID
)
from protocols.iec104.connection import IEC104Connection, IEC104ConnectionError
from protocols.iec104.server import IEC104Server, ServerEventListener
from protocols.iec104.client import IEC104Client

__all__ = [
    'APDU',
    'ASDU',
    'CauseOfTransmission',
    'FieldLengths',
    'InformationObject',
    'SingleCommand',
    'SinglePoint',
    'TypeID',
    'IEC104Connection',
    'IEC104ConnectionError',
    'IEC104Server',
    'ServerEventListener',
    'IEC104Client',
]
