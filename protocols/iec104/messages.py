"""
IEC 60870-5-104 Message Structures and Type Codes
==================================================

APDU (Application Protocol Data Unit): IEC 104 message frame
    - Start byte 0x68 and length octet
    - APCI (4 control octets): Application Protocol Control Information
    - ASDU (payload, I frames only): the application data unit

APCI control octets:
    - I frame (Information): bit 0 of octet 1 = 0, SSN and RSN both present
    - S frame (Supervisory): bits 0-1 of octet 1 = 01b, only RSN
    - U frame (Unnumbered): bits 0-1 of octet 1 = 11b, STARTDT/STOPDT/TESTFR

ASDU header (field widths are negotiated per installation):
    Type ID (1) | VSQ (1) | COT (1-2, T and P/N flags, originator) |
    Common address (1-2) | information objects (IOA 1-3 + elements)

Only the elements needed by the breaker outstation are decoded:
    M_SP_NA_1 (SIQ), C_SC_NA_1 (SCO), C_IC_NA_1 (QOI), C_CI_NA_1 (QCC),
    C_CS_NA_1 (CP56Time2a). Anything else is carried as a raw element.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from typing import List, Optional, Tuple, Union
import struct


START_BYTE = 0x68
MAX_APDU_LENGTH = 253  # APCI + ASDU, as carried in the length octet


class TypeID(IntEnum):
    """IEC 60870-5-101/104 Object Information Types"""

    # Monitoring data (M)
    M_SP_NA_1 = 1      # Single point information
    M_DP_NA_1 = 3      # Double point information
    M_ST_NA_1 = 5      # Step position information
    M_BO_NA_1 = 7      # Bitstring of 32 bits
    M_ME_NA_1 = 9      # Measured value (normalized)
    M_ME_NB_1 = 11     # Scaled integer measurement
    M_ME_NC_1 = 13     # Short floating point measurement
    M_IT_NA_1 = 15     # Integrated totals
    M_SP_TB_1 = 30     # Single point with CP56Time2a

    # Control commands (C)
    C_SC_NA_1 = 45     # Single command (on/off)
    C_DC_NA_1 = 46     # Double command
    C_RC_NA_1 = 47     # Regulating step command
    C_SE_NA_1 = 48     # Set point command (normalized)
    C_SE_NB_1 = 49     # Set point command (scaled)
    C_SE_NC_1 = 50     # Set point command (floating point)
    C_BO_NA_1 = 51     # Bitstring command
    C_SC_TA_1 = 58     # Single command with CP56Time2a

    # System commands
    C_IC_NA_1 = 100    # Interrogation command
    C_CI_NA_1 = 101    # Counter interrogation
    C_RD_NA_1 = 102    # Read command
    C_CS_NA_1 = 103    # Clock synchronization command
    C_RP_NA_1 = 105    # Reset process command
    C_TS_TA_1 = 107    # Test command with CP56Time2a


class CauseOfTransmission(IntEnum):
    """Cause Of Transmission codes"""

    PERIODIC = 1
    BACKGROUND_SCAN = 2
    SPONTANEOUS = 3
    INITIALIZED = 4
    REQUEST = 5
    ACTIVATION = 6
    ACTIVATION_CON = 7
    DEACTIVATION = 8
    DEACTIVATION_CON = 9
    ACTIVATION_TERMINATION = 10
    RETURN_INFO_REMOTE = 11
    RETURN_INFO_LOCAL = 12
    FILE_TRANSFER = 13
    INTERROGATED_BY_STATION = 20
    REQUESTED_BY_GENERAL_COUNTER = 37
    UNKNOWN_TYPE_ID = 44
    UNKNOWN_CAUSE_OF_TRANSMISSION = 45
    UNKNOWN_COMMON_ADDRESS = 46
    UNKNOWN_INFORMATION_OBJECT_ADDRESS = 47


def _enum_or_int(enum_cls, value: int):
    try:
        return enum_cls(value)
    except ValueError:
        return value


def _address(value: int, width: int, name: str) -> bytes:
    if not 0 <= value < 1 << (8 * width):
        raise ValueError(f"{name} {value} does not fit in {width} octet(s)")
    return value.to_bytes(width, 'little')


@dataclass(frozen=True)
class FieldLengths:
    """Octet widths of the variable ASDU header fields"""
    ioa: int = 3
    cot: int = 2
    common_address: int = 2

    def __post_init__(self):
        if self.ioa not in (1, 2, 3):
            raise ValueError(f"IOA field length must be 1-3, got {self.ioa}")
        if self.cot not in (1, 2):
            raise ValueError(f"COT field length must be 1-2, got {self.cot}")
        if self.common_address not in (1, 2):
            raise ValueError(f"CA field length must be 1-2, got {self.common_address}")


# ==================== Information elements ====================

@dataclass
class SinglePoint:
    """SIQ - single point information with quality descriptor"""
    value: bool
    blocked: bool = False
    substituted: bool = False
    not_topical: bool = False
    invalid: bool = False

    SIZE = 1

    def encode(self) -> bytes:
        siq = 0x01 if self.value else 0x00
        if self.blocked:
            siq |= 0x10
        if self.substituted:
            siq |= 0x20
        if self.not_topical:
            siq |= 0x40
        if self.invalid:
            siq |= 0x80
        return bytes([siq])

    @classmethod
    def decode(cls, data: bytes) -> 'SinglePoint':
        siq = data[0]
        return cls(bool(siq & 0x01), bool(siq & 0x10), bool(siq & 0x20),
                   bool(siq & 0x40), bool(siq & 0x80))

    def __str__(self):
        flags = [name for name in ('blocked', 'substituted', 'not_topical', 'invalid')
                 if getattr(self, name)]
        text = f"Single Point, is on: {self.value}"
        return text + (f" ({', '.join(flags)})" if flags else "")


@dataclass
class SingleCommand:
    """SCO - single command with select/execute flag"""
    state: bool
    qualifier: int = 0
    select: bool = False

    SIZE = 1

    def encode(self) -> bytes:
        sco = (0x01 if self.state else 0x00) | ((self.qualifier & 0x1F) << 2)
        if self.select:
            sco |= 0x80
        return bytes([sco])

    @classmethod
    def decode(cls, data: bytes) -> 'SingleCommand':
        sco = data[0]
        return cls(bool(sco & 0x01), (sco >> 2) & 0x1F, bool(sco & 0x80))

    def __str__(self):
        mode = "select" if self.select else "execute"
        return f"Single Command state on: {self.state}, {mode}, qualifier: {self.qualifier}"


@dataclass
class QualifierOfInterrogation:
    """QOI - 20 is station interrogation, 21-36 are groups 1-16"""
    value: int = 20

    SIZE = 1

    def encode(self) -> bytes:
        return bytes([self.value & 0xFF])

    @classmethod
    def decode(cls, data: bytes) -> 'QualifierOfInterrogation':
        return cls(data[0])

    def __str__(self):
        return f"Qualifier of interrogation: {self.value}"


@dataclass
class QualifierOfCounterInterrogation:
    """QCC - request (RQT, 5 = general) and freeze (FRZ) bits"""
    request: int = 5
    freeze: int = 0

    SIZE = 1

    def encode(self) -> bytes:
        return bytes([(self.request & 0x3F) | ((self.freeze & 0x03) << 6)])

    @classmethod
    def decode(cls, data: bytes) -> 'QualifierOfCounterInterrogation':
        return cls(data[0] & 0x3F, (data[0] >> 6) & 0x03)

    def __str__(self):
        return f"Qualifier of counter interrogation: request {self.request}, freeze {self.freeze}"


@dataclass
class Time56:
    """CP56Time2a - seven octet binary time, local time of the sender"""
    timestamp: datetime
    invalid: bool = False
    summer_time: bool = False

    SIZE = 7

    def encode(self) -> bytes:
        ts = self.timestamp
        millis = ts.second * 1000 + ts.microsecond // 1000
        minute = ts.minute | (0x80 if self.invalid else 0x00)
        hour = ts.hour | (0x80 if self.summer_time else 0x00)
        day = ts.day | (ts.isoweekday() << 5)
        return struct.pack('<HBBBBB', millis, minute, hour, day, ts.month, ts.year % 100)

    @classmethod
    def decode(cls, data: bytes) -> 'Time56':
        millis, minute, hour, day, month, year = struct.unpack('<HBBBBB', bytes(data[:7]))
        try:
            timestamp = datetime(2000 + (year & 0x7F), month & 0x0F, day & 0x1F,
                                 hour & 0x1F, minute & 0x3F,
                                 millis // 1000, (millis % 1000) * 1000)
        except ValueError as e:
            raise ValueError(f"Invalid CP56Time2a: {e}") from e
        return cls(timestamp, bool(minute & 0x80), bool(hour & 0x80))

    def __str__(self):
        return f"Time56: {self.timestamp.strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]}"


@dataclass
class RawElement:
    """Undecoded element octets for type IDs this module does not model"""
    data: bytes = b''

    def encode(self) -> bytes:
        return bytes(self.data)

    def __str__(self):
        return f"Raw: {self.data.hex()}"


InformationElement = Union[SinglePoint, SingleCommand, QualifierOfInterrogation,
                           QualifierOfCounterInterrogation, Time56, RawElement]

# Element layout per type ID
ELEMENT_LAYOUT = {
    TypeID.M_SP_NA_1: (SinglePoint,),
    TypeID.M_SP_TB_1: (SinglePoint, Time56),
    TypeID.C_SC_NA_1: (SingleCommand,),
    TypeID.C_SC_TA_1: (SingleCommand, Time56),
    TypeID.C_IC_NA_1: (QualifierOfInterrogation,),
    TypeID.C_CI_NA_1: (QualifierOfCounterInterrogation,),
    TypeID.C_CS_NA_1: (Time56,),
}


@dataclass
class InformationObject:
    """IEC 104 information object: address plus typed elements"""
    information_object_address: int
    elements: List[InformationElement] = field(default_factory=list)

    @property
    def element(self) -> Optional[InformationElement]:
        """First element, which is the only one for most types"""
        return self.elements[0] if self.elements else None

    def __str__(self):
        parts = ", ".join(str(e) for e in self.elements)
        return f"IOA: {self.information_object_address}, {parts}"


# ==================== APCI ====================

class APDUType(IntEnum):
    """APDU message type classification"""
    I_FRAME = 0        # Information frame (data transfer)
    S_FRAME = 1        # Supervisory frame (flow control)
    U_FRAME = 2        # Unnumbered frame (connection control)


class UFrameFunction(IntEnum):
    """U frame control octet values"""
    STARTDT_ACT = 0x07     # Start data transfer (activation)
    STARTDT_CON = 0x0B     # Start data transfer (confirmation)
    STOPDT_ACT = 0x13      # Stop data transfer (activation)
    STOPDT_CON = 0x23      # Stop data transfer (confirmation)
    TESTFR_ACT = 0x43      # Test frame (activation)
    TESTFR_CON = 0x83      # Test frame (confirmation)


@dataclass
class APCI:
    """Application Protocol Control Information"""
    frame_type: APDUType
    send_sequence: int = 0      # For I frames (15 bits)
    receive_sequence: int = 0   # For I, S frames (15 bits)
    u_function: Optional[UFrameFunction] = None  # For U frames

    def encode(self) -> bytes:
        """
        Encode APCI to 4 control octets

        I frame: SSN in bits 1-15 of octets 1-2, RSN in bits 1-15 of octets 3-4
        S frame: 0x01 0x00, RSN in octets 3-4
        U frame: function octet followed by three zero octets
        """
        if self.frame_type == APDUType.I_FRAME:
            return bytes([
                (self.send_sequence << 1) & 0xFF,
                (self.send_sequence >> 7) & 0xFF,
                (self.receive_sequence << 1) & 0xFF,
                (self.receive_sequence >> 7) & 0xFF,
            ])

        elif self.frame_type == APDUType.S_FRAME:
            return bytes([
                0x01,
                0x00,
                (self.receive_sequence << 1) & 0xFF,
                (self.receive_sequence >> 7) & 0xFF,
            ])

        elif self.frame_type == APDUType.U_FRAME:
            return bytes([int(self.u_function), 0x00, 0x00, 0x00])

        raise ValueError(f"Unknown frame type: {self.frame_type}")

    @staticmethod
    def decode(data: bytes) -> Tuple['APCI', int]:
        """Decode APCI from 4 octets"""
        if len(data) < 4:
            raise ValueError("APCI too short")

        b0, b1, b2, b3 = data[0], data[1], data[2], data[3]

        if b0 & 0x01 == 0:
            send_seq = ((b0 >> 1) & 0x7F) | (b1 << 7)
            recv_seq = ((b2 >> 1) & 0x7F) | (b3 << 7)
            return APCI(APDUType.I_FRAME, send_seq, recv_seq), 4

        elif b0 & 0x03 == 0x01:
            recv_seq = ((b2 >> 1) & 0x7F) | (b3 << 7)
            return APCI(APDUType.S_FRAME, 0, recv_seq), 4

        try:
            u_func = UFrameFunction(b0)
        except ValueError:
            raise ValueError(f"Invalid U frame control octet: 0x{b0:02x}") from None
        return APCI(APDUType.U_FRAME, u_function=u_func), 4


# ==================== ASDU ====================

@dataclass
class ASDU:
    """Application Service Data Unit"""
    type_id: Union[TypeID, int]
    cause: Union[CauseOfTransmission, int]
    common_address: int = 1
    objects: List[InformationObject] = None
    originator: int = 0
    negative: bool = False
    test: bool = False

    def __post_init__(self):
        if self.objects is None:
            self.objects = []

    def reply(self, cause: CauseOfTransmission, negative: bool = False) -> 'ASDU':
        """Mirror of this ASDU with a new cause, as used for confirmations"""
        return replace(self, cause=cause, negative=negative,
                       objects=list(self.objects))

    def encode(self, lengths: FieldLengths = FieldLengths()) -> bytes:
        """Encode ASDU to bytes"""
        if len(self.objects) > 0x7F:
            raise ValueError(f"Too many information objects: {len(self.objects)}")

        result = bytearray()
        result.append(int(self.type_id))

        # Variable structure qualifier: SQ=0, number of objects
        result.append(len(self.objects) & 0x7F)

        cot = int(self.cause) & 0x3F
        if self.negative:
            cot |= 0x40
        if self.test:
            cot |= 0x80
        result.append(cot)
        if lengths.cot == 2:
            result.append(self.originator & 0xFF)

        result.extend(_address(self.common_address, lengths.common_address, "Common address"))

        for obj in self.objects:
            result.extend(_address(obj.information_object_address, lengths.ioa, "IOA"))
            for element in obj.elements:
                result.extend(element.encode())

        return bytes(result)

    @staticmethod
    def decode(data: bytes, lengths: FieldLengths = FieldLengths()) -> 'ASDU':
        """Decode ASDU from bytes"""
        header = 2 + lengths.cot + lengths.common_address
        if len(data) < header:
            raise ValueError("ASDU too short")

        type_id = _enum_or_int(TypeID, data[0])
        vsq = data[1]
        sequence = bool(vsq & 0x80)
        num_objects = vsq & 0x7F
        cot_byte = data[2]
        originator = data[3] if lengths.cot == 2 else 0
        pos = 2 + lengths.cot
        common_address = int.from_bytes(data[pos:pos + lengths.common_address], 'little')
        pos += lengths.common_address

        asdu = ASDU(
            type_id,
            _enum_or_int(CauseOfTransmission, cot_byte & 0x3F),
            common_address,
            originator=originator,
            negative=bool(cot_byte & 0x40),
            test=bool(cot_byte & 0x80),
        )

        layout = ELEMENT_LAYOUT.get(type_id)
        if layout is None:
            # Element size unknown: keep the rest of the ASDU as one raw object
            if len(data) >= pos + lengths.ioa:
                ioa = int.from_bytes(data[pos:pos + lengths.ioa], 'little')
                raw = RawElement(bytes(data[pos + lengths.ioa:]))
                asdu.objects.append(InformationObject(ioa, [raw]))
            return asdu

        element_size = sum(e.SIZE for e in layout)
        ioa = 0
        for i in range(num_objects):
            if i == 0 or not sequence:
                if pos + lengths.ioa > len(data):
                    raise ValueError("Truncated information object address")
                ioa = int.from_bytes(data[pos:pos + lengths.ioa], 'little')
                pos += lengths.ioa
            else:
                ioa += 1

            if pos + element_size > len(data):
                raise ValueError(f"Truncated information object {ioa}")

            elements = []
            for element_cls in layout:
                elements.append(element_cls.decode(data[pos:pos + element_cls.SIZE]))
                pos += element_cls.SIZE
            asdu.objects.append(InformationObject(ioa, elements))

        return asdu

    def __str__(self):
        type_name = self.type_id.name if isinstance(self.type_id, TypeID) else str(self.type_id)
        cause_name = (self.cause.name if isinstance(self.cause, CauseOfTransmission)
                      else str(self.cause))
        lines = [
            f"ASDU Type: {int(self.type_id)}, {type_name}",
            f"Cause of transmission: {cause_name}, test: {self.test}, "
            f"negative con: {self.negative}",
            f"Originator address: {self.originator}, Common address: {self.common_address}",
        ]
        lines.extend(str(obj) for obj in self.objects)
        return "\n".join(lines)


# ==================== APDU ====================

@dataclass
class APDU:
    """Application Protocol Data Unit (complete message)"""
    apci: APCI
    asdu: Optional[ASDU] = None

    def encode(self, lengths: FieldLengths = FieldLengths()) -> bytes:
        """Encode complete APDU to bytes"""
        asdu_bytes = self.asdu.encode(lengths) if self.asdu else b''
        length = len(asdu_bytes) + 4
        if length > MAX_APDU_LENGTH:
            raise ValueError(f"APDU too long: {length} octets")

        result = bytearray([START_BYTE, length])
        result.extend(self.apci.encode())
        result.extend(asdu_bytes)
        return bytes(result)

    @staticmethod
    def decode(data: bytes, lengths: FieldLengths = FieldLengths()) -> Tuple['APDU', int]:
        """Decode APDU and return consumed bytes"""
        if len(data) < 6:
            raise ValueError("APDU too short")

        if data[0] != START_BYTE:
            raise ValueError(f"Invalid start byte: 0x{data[0]:02x}")

        length = data[1]
        if length < 4:
            raise ValueError(f"Invalid APDU length: {length}")
        if len(data) < 2 + length:
            raise ValueError("Incomplete APDU")

        return APDU.decode_body(data[2:2 + length], lengths), 2 + length

    @staticmethod
    def decode_body(body: bytes, lengths: FieldLengths = FieldLengths()) -> 'APDU':
        """Decode the APCI and ASDU octets following the length octet"""
        apci, _ = APCI.decode(body[:4])
        asdu = None
        if apci.frame_type == APDUType.I_FRAME and len(body) > 4:
            asdu = ASDU.decode(body[4:], lengths)
        return APDU(apci, asdu)

    @staticmethod
    def create_u_frame(function: UFrameFunction) -> 'APDU':
        """Create STARTDT/STOPDT/TESTFR frame"""
        return APDU(APCI(APDUType.U_FRAME, u_function=function))

    @staticmethod
    def create_data(send_seq: int, recv_seq: int, asdu: ASDU) -> 'APDU':
        """Create I frame with data"""
        return APDU(APCI(APDUType.I_FRAME, send_seq, recv_seq), asdu)

    @staticmethod
    def create_supervisory(recv_seq: int) -> 'APDU':
        """Create S frame (flow control)"""
        return APDU(APCI(APDUType.S_FRAME, 0, recv_seq))
