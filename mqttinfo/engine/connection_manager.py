"""
Connection Manager - MQTT session lifecycle for probing.

Provides:
- CONNECT/CONNACK handshakes per protocol version
- Version support detection with a per-version reason-code policy
- Liveness checks (PINGREQ/PINGRESP) with transparent reconnection
- Scoped connections: one open at a time, closed before the next phase
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import structlog

from mqttinfo.engine import packets
from mqttinfo.engine.packets import Ack, Probe
from mqttinfo.engine.transport import BrokerTransport
from mqttinfo.exceptions import HandshakeError, MqttInfoError, TransportError
from mqttinfo.models import BrokerInfo, Credentials, ProtocolVersion

logger = structlog.get_logger()

CONNACK_MIN_BYTES = 4
REASON_CODE_OFFSET = 3

# v3.1.1 return codes
V4_FATAL_CODES = {
    0x01: "Protocol version not supported",
    0x02: "Identifier rejected",
    0x03: "Server unavailable",
}
V4_CREDENTIALS_REJECTED = frozenset({0x04, 0x05})  # bad username/password, not authorized

# v5.0 reason codes
V5_UNSUPPORTED_CODES = frozenset({
    0x01,  # v3.1.1 "unacceptable protocol version"
    0x05,  # v3.1.1 "not authorized", broker could not parse a v5.0 CONNECT
    0x84,  # unsupported protocol version
})
V5_CREDENTIALS_REJECTED = frozenset({0x86, 0x87, 0x8C})
V5_FATAL_CODES = {
    0x80: "Unspecified error",
    0x81: "Malformed packet",
    0x82: "Protocol error",
    0x83: "Implementation specific error",
    0x85: "Client identifier not valid",
    0x88: "Server unavailable",
    0x89: "Server busy",
    0x8A: "Banned",
    0x90: "Topic name invalid",
    0x95: "Packet too large",
    0x97: "Quota exceeded",
    0x9A: "Retain not supported",
    0x9B: "QoS not supported",
    0x9C: "Use another server",
    0x9D: "Server moved",
    0x9F: "Connection rate exceeded",
}


@dataclass(frozen=True)
class Supported:
    """Broker speaks the version; anonymous tells whether it let us in without credentials."""
    anonymous: bool


@dataclass(frozen=True)
class Unsupported:
    """Broker does not speak the version."""
    reason_code: int


@dataclass(frozen=True)
class Fatal:
    """CONNACK reason that prevents any conclusion about the version."""
    reason: str
    reason_code: int


ConnectOutcome = Union[Supported, Unsupported, Fatal]


def classify_connack(version: ProtocolVersion, reason_code: int) -> ConnectOutcome:
    """
    Map a CONNACK reason code onto a support verdict.

    Assumes brokers answer "unsupported protocol version" rather than a
    credentials error when they cannot speak the requested version.
    """
    if reason_code == 0x00:
        return Supported(anonymous=True)

    if version is ProtocolVersion.V3_1_1:
        if reason_code in V4_FATAL_CODES:
            return Fatal(V4_FATAL_CODES[reason_code], reason_code)
        if reason_code in V4_CREDENTIALS_REJECTED:
            return Supported(anonymous=False)
        return Unsupported(reason_code)

    if reason_code in V5_UNSUPPORTED_CODES:
        return Unsupported(reason_code)
    if reason_code in V5_CREDENTIALS_REJECTED:
        return Supported(anonymous=False)
    if reason_code in V5_FATAL_CODES:
        return Fatal(V5_FATAL_CODES[reason_code], reason_code)
    return Unsupported(reason_code)


@dataclass
class Connection:
    """An MQTT session over one transport, bound to one protocol version."""

    version: ProtocolVersion
    transport: BrokerTransport

    @property
    def open(self) -> bool:
        return self.transport.connected

    async def send(self, data: bytes) -> None:
        await self.transport.send(data)

    async def recv(self, timeout_sec: Optional[float] = None) -> bytes:
        return await self.transport.recv(timeout_sec)

    async def exchange(self, data: bytes, timeout_sec: Optional[float] = None) -> bytes:
        return await self.transport.send_and_receive(data, timeout_sec)


class LivenessState(str, Enum):
    """Outcome of a liveness check."""
    ALIVE_SAME = "alive_same"  # original connection answered PINGREQ
    ALIVE_NEW = "alive_new"    # original was dead, a fresh one replaced it
    FATAL = "fatal"            # original was dead and reopening failed


@dataclass(frozen=True)
class Liveness:
    state: LivenessState
    connection: Optional[Connection] = None
    error: Optional[MqttInfoError] = None


class ConnectionManager:
    """
    Opens, checks and closes broker connections.

    Handles are never repaired in place: recovery hands back a new
    Connection and closes the old one, so callers always continue with
    the returned handle.
    """

    def __init__(
        self,
        host: str,
        port: int,
        credentials: Optional[Credentials] = None,
        dial_timeout_sec: Optional[float] = None,
        read_timeout_sec: Optional[float] = None,
    ):
        self.host = host
        self.port = port
        self.credentials = credentials or Credentials()
        self.dial_timeout_sec = dial_timeout_sec
        self.read_timeout_sec = read_timeout_sec

    @classmethod
    def for_broker(cls, info: BrokerInfo, **timeouts) -> "ConnectionManager":
        return cls(info.host, info.port, info.credentials, **timeouts)

    @property
    def server(self) -> str:
        return f"{self.host}:{self.port}"

    def _transport(self) -> BrokerTransport:
        return BrokerTransport(
            self.host,
            self.port,
            dial_timeout_sec=self.dial_timeout_sec,
            read_timeout_sec=self.read_timeout_sec,
        )

    async def _handshake(self, transport: BrokerTransport, connect_packet: bytes) -> bytes:
        """Send CONNECT and return the CONNACK bytes (at least 4)."""
        try:
            connack = await transport.send_and_receive(connect_packet)
        except TransportError as e:
            raise HandshakeError(
                f"CONNACK read failed: {e.message}",
                details={"server": self.server, **e.details},
            )

        if len(connack) < CONNACK_MIN_BYTES:
            raise HandshakeError(
                f"CONNACK too short ({len(connack)} bytes)",
                details={"server": self.server, "connack": connack.hex()},
            )

        logger.debug(
            "connack_received",
            server=self.server,
            reason_code=connack[REASON_CODE_OFFSET],
            size=len(connack),
        )
        return connack

    async def check_connection(self, version: ProtocolVersion) -> ConnectOutcome:
        """
        Determine whether the broker speaks a protocol version.

        Always connects anonymously, so Supported.anonymous reports whether
        the broker accepts clients without credentials.

        Raises:
            ConnectionError: Dial failed
            HandshakeError: No usable CONNACK
        """
        transport = self._transport()
        await transport.connect()
        try:
            connack = await self._handshake(transport, packets.encode_connect(version))
        finally:
            await transport.close()

        reason_code = connack[REASON_CODE_OFFSET]
        outcome = classify_connack(version, reason_code)
        logger.info(
            "version_checked",
            server=self.server,
            version=version.value,
            reason_code=reason_code,
            outcome=type(outcome).__name__,
        )
        return outcome

    async def connect(self, version: ProtocolVersion) -> Connection:
        """
        Open a session using the configured credentials.

        Raises:
            ConnectionError: Dial failed
            HandshakeError: Truncated CONNACK or connection refused by the broker
        """
        transport = self._transport()
        await transport.connect()
        try:
            connack = await self._handshake(
                transport, packets.encode_connect(version, self.credentials)
            )
            reason_code = connack[REASON_CODE_OFFSET]
            if reason_code != 0x00:
                raise HandshakeError(
                    f"Connection request rejected (code {reason_code})",
                    reason_code=reason_code,
                    details={"server": self.server, "version": version.value},
                )
        except HandshakeError:
            await transport.close()
            raise

        return Connection(version=version, transport=transport)

    async def pings_back(self, connection: Connection) -> bool:
        """True if the broker answers PINGREQ with exactly a PINGRESP."""
        try:
            response = await connection.exchange(packets.packet(connection.version, Probe.PINGREQ))
        except TransportError as e:
            logger.debug("pingreq_failed", server=self.server, error=e.message)
            return False
        return response in packets.patterns(connection.version, Ack.PINGRESP)

    async def reconnect_if_dead(self, connection: Connection) -> Liveness:
        """
        Check the connection and replace it if the broker stopped answering.

        The previous handle must not be used after this call.
        """
        if await self.pings_back(connection):
            return Liveness(LivenessState.ALIVE_SAME, connection)

        logger.info("liveness_lost", server=self.server, version=connection.version.value)
        try:
            fresh = await self.reconnect(connection)
        except MqttInfoError as e:
            return Liveness(LivenessState.FATAL, error=e)
        return Liveness(LivenessState.ALIVE_NEW, fresh)

    async def reconnect(self, connection: Connection) -> Connection:
        """Close the connection and open a fresh one of the same version."""
        await self.close(connection)
        return await self.connect(connection.version)

    async def close(self, connection: Optional[Connection]) -> None:
        if connection is not None:
            await connection.transport.close()
