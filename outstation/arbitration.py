"""
Command arbitration for inbound ASDUs

Select-Before-Operate on single commands:
    SELECT  - remember (ioa -> desired state) on the issuing session only
    EXECUTE - apply it if that same session selected the same state,
              then drop the selection and broadcast the new state

Every request gets exactly one activation confirmation (positive or
negative); interrogations are additionally followed by the snapshot and
an activation termination.
"""
import logging
from enum import Enum

from protocols.iec104.messages import ASDU, CauseOfTransmission, SingleCommand, TypeID
from outstation.registry import BreakerRegistry, state_name
from outstation.sessions import Session, SessionSet
from outstation.snapshot import broadcast_delta, build_snapshot

logger = logging.getLogger(__name__)


class CommandOutcome(str, Enum):
    INTERROGATED = "interrogated"
    CLOCK_SYNCHRONIZED = "clock_synchronized"
    SELECTED = "selected"
    EXECUTED = "executed"
    EXECUTE_IGNORED = "execute_ignored"      # positive confirm, nothing applied
    EXECUTE_REJECTED = "execute_rejected"    # negative confirm (strict mode)
    UNKNOWN_IOA = "unknown_ioa"
    UNKNOWN_TYPE = "unknown_type"


async def arbitrate(session: Session, asdu: ASDU, registry: BreakerRegistry,
                    sessions: SessionSet, strict_execute: bool = False) -> CommandOutcome:
    """
    Classify one ASDU from session and carry out the response protocol.

    Args:
        session: Issuing session (its selection table is read and written)
        asdu: Decoded request
        registry: Shared breaker state
        sessions: Broadcast targets for executed commands
        strict_execute: Negatively confirm EXECUTE without a matching SELECT

    Raises:
        ConnectionError: a reply could not be sent to the issuing session
        ValueError: a reply does not fit the session's field widths
    """
    conn = session.connection

    if asdu.type_id in (TypeID.C_IC_NA_1, TypeID.C_CI_NA_1):
        logger.info(f"{session}: interrogation {TypeID(asdu.type_id).name} "
                    f"CA={asdu.common_address}")
        await conn.send_confirmation(asdu)
        for part in build_snapshot(registry, asdu.common_address, conn.lengths):
            await conn.send(part)
        await conn.send_activation_termination(asdu)
        return CommandOutcome.INTERROGATED

    if asdu.type_id == TypeID.C_CS_NA_1:
        logger.info(f"{session}: clock synchronization {asdu.objects[0] if asdu.objects else ''}")
        await conn.send_confirmation(asdu)
        return CommandOutcome.CLOCK_SYNCHRONIZED

    if asdu.type_id == TypeID.C_SC_NA_1:
        return await _single_command(session, asdu, registry, sessions, strict_execute)

    logger.warning(f"{session}: unknown type identifier {int(asdu.type_id)}")
    await conn.send_negative_confirmation(asdu, CauseOfTransmission.UNKNOWN_TYPE_ID)
    return CommandOutcome.UNKNOWN_TYPE


async def _single_command(session: Session, asdu: ASDU, registry: BreakerRegistry,
                          sessions: SessionSet, strict_execute: bool) -> CommandOutcome:
    conn = session.connection
    obj = asdu.objects[0] if asdu.objects else None
    command = obj.element if obj else None

    if not isinstance(command, SingleCommand) or obj.information_object_address not in registry:
        ioa = obj.information_object_address if obj else None
        logger.warning(f"{session}: single command for unknown IOA {ioa}")
        await conn.send_negative_confirmation(
            asdu, CauseOfTransmission.UNKNOWN_INFORMATION_OBJECT_ADDRESS)
        return CommandOutcome.UNKNOWN_IOA

    ioa = obj.information_object_address
    desired = command.state

    if command.select:
        session.selections.select(ioa, desired)
        logger.info(f"{session}: SELECT IOA {ioa} -> {state_name(desired)}")
        await conn.send_confirmation(asdu)
        return CommandOutcome.SELECTED

    if not session.selections.consume(ioa, desired):
        # TODO: decide with operators whether an unmatched EXECUTE should be
        # negatively confirmed by default; strict_execute covers it meanwhile.
        if strict_execute:
            logger.warning(f"{session}: EXECUTE IOA {ioa} without matching SELECT, rejected")
            await conn.send_negative_confirmation(asdu, CauseOfTransmission.ACTIVATION_CON)
            return CommandOutcome.EXECUTE_REJECTED

        logger.warning(f"{session}: EXECUTE IOA {ioa} without matching SELECT, ignored")
        await conn.send_confirmation(asdu)
        return CommandOutcome.EXECUTE_IGNORED

    registry.set(ioa, desired)
    logger.info(f"{session}: EXECUTE IOA {ioa} -> {state_name(desired)}")
    await broadcast_delta(sessions, asdu.common_address, ioa, desired)
    await conn.send_confirmation(asdu)
    return CommandOutcome.EXECUTED
