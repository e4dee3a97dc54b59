"""
Status ASDU builders and spontaneous broadcast
"""
import logging
from typing import Iterable, List

from protocols.iec104.messages import (
    ASDU, CauseOfTransmission, FieldLengths, InformationObject, MAX_APDU_LENGTH,
    SinglePoint, TypeID
)
from outstation.registry import BreakerRegistry, state_name
from outstation.sessions import Session

logger = logging.getLogger(__name__)

APCI_LENGTH = 4
MAX_OBJECTS = 0x7F  # VSQ number field


def points_per_asdu(lengths: FieldLengths = FieldLengths()) -> int:
    """Single points (SQ=0) that fit in one APDU with the given field widths"""
    header = 2 + lengths.cot + lengths.common_address
    room = MAX_APDU_LENGTH - APCI_LENGTH - header
    return min(MAX_OBJECTS, room // (lengths.ioa + SinglePoint.SIZE))


def build_snapshot(registry: BreakerRegistry, common_address: int,
                   lengths: FieldLengths = FieldLengths()) -> List[ASDU]:
    """
    M_SP_NA_1 ASDUs holding every breaker, cause interrogated-by-station.

    The registry is read once and split over as many ASDUs as the field
    widths require; an empty registry gives no ASDU.
    """
    objects = [
        InformationObject(ioa, [SinglePoint(closed)])
        for ioa, closed in registry.snapshot()
    ]
    size = points_per_asdu(lengths)
    return [
        ASDU(TypeID.M_SP_NA_1, CauseOfTransmission.INTERROGATED_BY_STATION,
             common_address, objects=objects[start:start + size])
        for start in range(0, len(objects), size)
    ]


def build_delta(common_address: int, ioa: int, closed: bool) -> ASDU:
    """Single-point spontaneous report for one breaker"""
    return ASDU(TypeID.M_SP_NA_1, CauseOfTransmission.SPONTANEOUS, common_address,
                objects=[InformationObject(ioa, [SinglePoint(closed)])])


async def broadcast_delta(sessions: Iterable[Session], common_address: int,
                          ioa: int, closed: bool) -> int:
    """
    Send a spontaneous report to every session with data transfer started.

    A failed send (closed link, or a report that does not fit the session's
    field widths) is logged and the remaining sessions still get the report.

    Returns:
        Number of sessions the report was written to
    """
    update = build_delta(common_address, ioa, closed)
    delivered = 0

    for session in list(sessions):
        if not session.data_transfer_active:
            continue
        try:
            await session.connection.send(update)
            delivered += 1
        except (ConnectionError, ValueError) as e:
            logger.warning(f"Spontaneous update to {session} failed: {e}")

    logger.info(f"Broadcast IOA {ioa} {state_name(closed)} (CA={common_address}) "
                f"to {delivered} session(s)")
    return delivered
