"""
MQTT Packet Codec

Builds and recognizes the small subset of MQTT packets needed to probe a
broker. Apart from CONNECT, which carries the caller's credentials, every
probe is a literal byte string looked up by (protocol version, probe kind),
and every response is recognized by exact prefix comparison against the
literal acknowledgements the broker is expected to send.

All packets that carry a packet identifier use 0x0001, so a request and
its acknowledgement chain can be matched literally.

PACKET LAYOUT:
==============
  Byte 1:   [Packet Type (4 bits)][Flags (4 bits)]
  Byte 2+:  Remaining Length (variable-length integer, 1-4 bytes)
  Then:     Variable header and payload

v5.0 packets differ from their v3.1.1 counterparts by a properties-length
byte (0x00, no properties) in the variable header, or for PUBREL by an
explicit 0x00 reason code.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from mqttinfo.config import settings
from mqttinfo.exceptions import ParseError
from mqttinfo.models import Credentials, ProtocolVersion

V4 = ProtocolVersion.V3_1_1
V5 = ProtocolVersion.V5_0

PROTOCOL_NAME = b"MQTT"

CONNECT_FLAGS_ANONYMOUS = 0x02  # clean session
CONNECT_FLAGS_CREDENTIALS = 0xC2  # username + password + clean session

MAX_REMAINING_LENGTH = 268_435_455


class Probe(str, Enum):
    """Packets sent to the broker"""

    PINGREQ = "pingreq"
    PUBLISH_QOS0 = "publish_qos0"
    PUBLISH_QOS1 = "publish_qos1"
    PUBLISH_QOS2 = "publish_qos2"
    PUBLISH_QOS3 = "publish_qos3"
    PUBREL = "pubrel"
    SUBSCRIBE_ALL = "subscribe_all"
    SUBSCRIBE_INVALID = "subscribe_invalid"
    SUBSCRIBE_INVALID_UTF8 = "subscribe_invalid_utf8"
    PUBLISH_SYS = "publish_sys"
    SUBSCRIBE_SYS_TOPIC = "subscribe_sys_topic"
    SUBSCRIBE_SYS_ALL = "subscribe_sys_all"
    SUBSCRIBE_SYS_ROUTER = "subscribe_sys_router"
    SUBSCRIBE_SYS_LOAD = "subscribe_sys_load"


class Ack(str, Enum):
    """Responses expected from the broker"""

    PINGRESP = "pingresp"
    PUBACK = "puback"
    PUBREC = "pubrec"
    PUBCOMP = "pubcomp"
    SUBACK_QOS0 = "suback_qos0"
    SUBACK_QOS1 = "suback_qos1"
    SYS_ECHO = "sys_echo"


# Topic "A", payload "B"
_PUBLISH_QOS0_V4 = b"\x30\x04\x00\x01\x41\x42"
_PUBLISH_QOS0_V5 = b"\x30\x05\x00\x01\x41\x00\x42"
_PUBLISH_QOS1_V4 = b"\x32\x06\x00\x01\x41\x00\x01\x42"
_PUBLISH_QOS1_V5 = b"\x32\x07\x00\x01\x41\x00\x01\x00\x42"
_PUBLISH_QOS2_V4 = b"\x34\x06\x00\x01\x41\x00\x01\x42"
_PUBLISH_QOS2_V5 = b"\x34\x07\x00\x01\x41\x00\x01\x00\x42"
_PUBLISH_QOS3_V4 = b"\x36\x06\x00\x01\x41\x00\x01\x42"
_PUBLISH_QOS3_V5 = b"\x36\x07\x00\x01\x41\x00\x01\x00\x42"

# Retained QoS 1 publish to "$SYS/mqttinfo", payload "A"
_PUBLISH_SYS_V4 = b"\x33\x12\x00\x0d$SYS/mqttinfo\x00\x01\x41"
_PUBLISH_SYS_V5 = b"\x33\x13\x00\x0d$SYS/mqttinfo\x00\x01\x00\x41"

_SUBACK_QOS0_V4 = b"\x90\x03\x00\x01\x00"
_SUBACK_QOS0_V5 = b"\x90\x04\x00\x01\x00\x00"
_SUBACK_QOS1_V4 = b"\x90\x03\x00\x01\x01"
_SUBACK_QOS1_V5 = b"\x90\x04\x00\x01\x00\x01"

_PACKETS: dict[tuple[ProtocolVersion, Probe], bytes] = {
    (V4, Probe.PINGREQ): b"\xc0\x00",
    (V5, Probe.PINGREQ): b"\xc0\x00",
    (V4, Probe.PUBLISH_QOS0): _PUBLISH_QOS0_V4,
    (V5, Probe.PUBLISH_QOS0): _PUBLISH_QOS0_V5,
    (V4, Probe.PUBLISH_QOS1): _PUBLISH_QOS1_V4,
    (V5, Probe.PUBLISH_QOS1): _PUBLISH_QOS1_V5,
    (V4, Probe.PUBLISH_QOS2): _PUBLISH_QOS2_V4,
    (V5, Probe.PUBLISH_QOS2): _PUBLISH_QOS2_V5,
    (V4, Probe.PUBLISH_QOS3): _PUBLISH_QOS3_V4,
    (V5, Probe.PUBLISH_QOS3): _PUBLISH_QOS3_V5,
    (V4, Probe.PUBREL): b"\x62\x02\x00\x01",
    (V5, Probe.PUBREL): b"\x62\x03\x00\x01\x00",
    # "#" at QoS 0
    (V4, Probe.SUBSCRIBE_ALL): b"\x82\x06\x00\x01\x00\x01\x23\x00",
    (V5, Probe.SUBSCRIBE_ALL): b"\x82\x07\x00\x01\x00\x00\x01\x23\x00",
    # "A+": wildcard not occupying a whole level
    (V4, Probe.SUBSCRIBE_INVALID): b"\x82\x07\x00\x01\x00\x02\x41\x2b\x00",
    (V5, Probe.SUBSCRIBE_INVALID): b"\x82\x08\x00\x01\x00\x00\x02\x41\x2b\x00",
    # 0xC3 0x28: truncated two-byte UTF-8 sequence
    (V4, Probe.SUBSCRIBE_INVALID_UTF8): b"\x82\x07\x00\x01\x00\x02\xc3\x28\x00",
    (V5, Probe.SUBSCRIBE_INVALID_UTF8): b"\x82\x08\x00\x01\x00\x00\x02\xc3\x28\x00",
    (V4, Probe.PUBLISH_SYS): _PUBLISH_SYS_V4,
    (V5, Probe.PUBLISH_SYS): _PUBLISH_SYS_V5,
    # "$SYS/mqttinfo" at QoS 1
    (V4, Probe.SUBSCRIBE_SYS_TOPIC): b"\x82\x12\x00\x01\x00\x0d$SYS/mqttinfo\x01",
    (V5, Probe.SUBSCRIBE_SYS_TOPIC): b"\x82\x13\x00\x01\x00\x00\x0d$SYS/mqttinfo\x01",
    (V4, Probe.SUBSCRIBE_SYS_ALL): b"\x82\x0b\x00\x01\x00\x06$SYS/#\x00",
    (V5, Probe.SUBSCRIBE_SYS_ALL): b"\x82\x0c\x00\x01\x00\x00\x06$SYS/#\x00",
    (V4, Probe.SUBSCRIBE_SYS_ROUTER): b"\x82\x20\x00\x01\x00\x1b$SYS/+/router/subscriptions\x00",
    (V5, Probe.SUBSCRIBE_SYS_ROUTER): b"\x82\x21\x00\x01\x00\x00\x1b$SYS/+/router/subscriptions\x00",
    (V4, Probe.SUBSCRIBE_SYS_LOAD): b"\x82\x20\x00\x01\x00\x1b$SYS/+/load/messages/sent/+\x00",
    (V5, Probe.SUBSCRIBE_SYS_LOAD): b"\x82\x21\x00\x01\x00\x00\x1b$SYS/+/load/messages/sent/+\x00",
}

# v5.0 brokers may append reason code 0x10 (no matching subscribers)
_PATTERNS: dict[tuple[ProtocolVersion, Ack], Tuple[bytes, ...]] = {
    (V4, Ack.PINGRESP): (b"\xd0\x00",),
    (V5, Ack.PINGRESP): (b"\xd0\x00",),
    (V4, Ack.PUBACK): (b"\x40\x02\x00\x01",),
    (V5, Ack.PUBACK): (b"\x40\x02\x00\x01", b"\x40\x03\x00\x01\x10"),
    (V4, Ack.PUBREC): (b"\x50\x02\x00\x01",),
    (V5, Ack.PUBREC): (b"\x50\x02\x00\x01", b"\x50\x03\x00\x01\x10"),
    (V4, Ack.PUBCOMP): (b"\x70\x02\x00\x01",),
    (V5, Ack.PUBCOMP): (b"\x70\x02\x00\x01",),
    (V4, Ack.SUBACK_QOS0): (_SUBACK_QOS0_V4,),
    (V5, Ack.SUBACK_QOS0): (_SUBACK_QOS0_V5,),
    (V4, Ack.SUBACK_QOS1): (_SUBACK_QOS1_V4,),
    (V5, Ack.SUBACK_QOS1): (_SUBACK_QOS1_V5,),
    # SUBACK immediately followed by our own retained $SYS publish
    (V4, Ack.SYS_ECHO): (_SUBACK_QOS1_V4 + _PUBLISH_SYS_V4,),
    (V5, Ack.SYS_ECHO): (_SUBACK_QOS1_V5 + _PUBLISH_SYS_V5,),
}

PACKETS: Mapping[tuple[ProtocolVersion, Probe], bytes] = MappingProxyType(_PACKETS)
PATTERNS: Mapping[tuple[ProtocolVersion, Ack], Tuple[bytes, ...]] = MappingProxyType(_PATTERNS)


def packet(version: ProtocolVersion, probe: Probe) -> bytes:
    """Literal probe packet for a protocol version"""
    return PACKETS[(version, probe)]


def patterns(version: ProtocolVersion, ack: Ack) -> Tuple[bytes, ...]:
    """Accepted prefixes for an expected response"""
    return PATTERNS[(version, ack)]


def matches(response: Optional[bytes], version: ProtocolVersion, ack: Ack) -> bool:
    """True if the response starts with any accepted form of the ack"""
    if not response:
        return False
    return any(response.startswith(prefix) for prefix in patterns(version, ack))


def encode_length(length: int) -> bytes:
    """
    Encode an MQTT variable-length integer.

    Seven bits per byte, least significant group first, high bit set while
    more bytes follow.

    Raises:
        ValueError: If length is outside 0..268,435,455
    """
    if length < 0 or length > MAX_REMAINING_LENGTH:
        raise ValueError(f"remaining length out of range: {length}")

    encoded = bytearray()
    while True:
        digit = length % 128
        length //= 128
        if length > 0:
            digit |= 0x80
        encoded.append(digit)
        if length == 0:
            break
    return bytes(encoded)


def decode_remaining_length(data: bytes, start: int = 1) -> tuple[int, int]:
    """
    Decode an MQTT variable-length integer.

    Args:
        data: Packet bytes
        start: Offset of the first length byte (1 for a fixed header)

    Returns:
        Tuple of (value, offset of the first byte after the encoding)

    Raises:
        ParseError: On truncated data or an encoding longer than 4 bytes
    """
    multiplier = 1
    value = 0
    index = start

    for _ in range(4):
        if index >= len(data):
            raise ParseError("Truncated remaining length", details={"offset": index})
        byte = data[index]
        index += 1
        value += (byte & 0x7F) * multiplier
        if not byte & 0x80:
            return value, index
        multiplier *= 128

    raise ParseError("Remaining length longer than 4 bytes", details={"offset": start})


def _utf8_field(value: bytes) -> bytes:
    return struct.pack(">H", len(value)) + value


def encode_connect(
    version: ProtocolVersion,
    credentials: Optional[Credentials] = None,
) -> bytes:
    """
    Build a CONNECT packet with the configured client id and keep-alive.

    Credentials are only sent when a username is set. Callers must keep
    each credential under 65536 bytes (the Credentials model enforces it).
    """
    anonymous = credentials is None or credentials.anonymous
    flags = CONNECT_FLAGS_ANONYMOUS if anonymous else CONNECT_FLAGS_CREDENTIALS

    variable_header = (
        _utf8_field(PROTOCOL_NAME)
        + bytes([version.level, flags])
        + struct.pack(">H", settings.keep_alive_sec)
    )
    if version is ProtocolVersion.V5_0:
        variable_header += b"\x00"  # no properties

    payload = _utf8_field(settings.client_id.encode("utf-8"))
    if not anonymous:
        payload += _utf8_field(credentials.username.encode("utf-8"))
        payload += _utf8_field(credentials.password.encode("utf-8"))

    body = variable_header + payload
    return b"\x10" + encode_length(len(body)) + body


@dataclass(frozen=True)
class ConnectPacket:
    """Decoded CONNECT packet"""

    version: ProtocolVersion
    flags: int
    keep_alive: int
    client_id: str
    username: Optional[str] = None
    password: Optional[str] = None


def decode_connect(data: bytes) -> ConnectPacket:
    """
    Decode a CONNECT packet as produced by encode_connect.

    Only the fields encode_connect writes are understood: v5.0 properties
    must be empty, and will/will-topic payloads are rejected.

    Raises:
        ParseError: If the bytes are not such a CONNECT packet
    """
    if not data or data[0] != 0x10:
        raise ParseError("Not a CONNECT packet")

    remaining, index = decode_remaining_length(data)
    if len(data) - index != remaining:
        raise ParseError(
            "Remaining length mismatch",
            details={"declared": remaining, "actual": len(data) - index},
        )

    def read_field(offset: int) -> tuple[bytes, int]:
        if offset + 2 > len(data):
            raise ParseError("Truncated length prefix", details={"offset": offset})
        (size,) = struct.unpack_from(">H", data, offset)
        end = offset + 2 + size
        if end > len(data):
            raise ParseError("Truncated field", details={"offset": offset, "size": size})
        return data[offset + 2:end], end

    name, index = read_field(index)
    if name != PROTOCOL_NAME:
        raise ParseError("Unexpected protocol name", details={"name": name})

    if index + 4 > len(data):
        raise ParseError("Truncated variable header")
    level, flags = data[index], data[index + 1]
    (keep_alive,) = struct.unpack_from(">H", data, index + 2)
    index += 4

    try:
        version = next(v for v in ProtocolVersion if v.level == level)
    except StopIteration:
        raise ParseError("Unsupported protocol level", details={"level": level})

    if version is ProtocolVersion.V5_0:
        if index >= len(data) or data[index] != 0x00:
            raise ParseError("Non-empty CONNECT properties")
        index += 1

    if flags & 0x04:
        raise ParseError("Will messages are not supported")

    client_id, index = read_field(index)
    username = password = None
    if flags & 0x80:
        raw, index = read_field(index)
        username = raw.decode("utf-8")
    if flags & 0x40:
        raw, index = read_field(index)
        password = raw.decode("utf-8")

    if index != len(data):
        raise ParseError("Trailing bytes after CONNECT payload")

    return ConnectPacket(
        version=version,
        flags=flags,
        keep_alive=keep_alive,
        client_id=client_id.decode("utf-8"),
        username=username,
        password=password,
    )
