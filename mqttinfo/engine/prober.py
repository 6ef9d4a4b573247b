"""
Probe Sequencer - ordered feature checks for one protocol version.

The battery is declared as data: each step names the finding it sets, how
the connection is recovered before it runs, and the check itself. Checks
are soft: a read error, timeout or unexpected response leaves the finding
at its default. Only failing to connect, the first PINGREQ going
unanswered, or failing to reopen a dead connection abort the phase.

Some probes (reserved QoS, invalid filters) cannot tell a broker that
rejected the packet and dropped the connection from one that silently
ignored it; both read back as "no match".
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from mqttinfo.config import settings
from mqttinfo.engine import packets
from mqttinfo.engine.connection_manager import Connection, ConnectionManager, LivenessState
from mqttinfo.engine.packets import Ack, Probe
from mqttinfo.exceptions import LivenessError, TransportError
from mqttinfo.models import BrokerInfo, ProtocolVersion, VersionFindings

logger = structlog.get_logger()


class Recovery(str, Enum):
    """How the connection is prepared before a step."""
    NONE = "none"          # reuse as is
    IF_DEAD = "if_dead"    # PINGREQ, reopen only if unanswered
    FORCED = "forced"      # always close and reopen


Check = Callable[["ProbeSequencer", Connection, VersionFindings], Awaitable[Optional[bool]]]


@dataclass(frozen=True)
class Step:
    finding: str
    recovery: Recovery
    check: Check


class ProbeSequencer:
    """
    Runs the feature battery against one broker, writing into its BrokerInfo.

    Each finding is set from a response read on a connection that was
    verified immediately beforehand, either by a PINGRESP or by a fresh
    CONNACK.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        info: BrokerInfo,
        sys_echo_wait_sec: Optional[float] = None,
    ):
        self.manager = manager
        self.info = info
        self.sys_echo_wait_sec = (
            sys_echo_wait_sec if sys_echo_wait_sec is not None else settings.sys_echo_wait_sec
        )

    async def analyze(self, version: ProtocolVersion) -> VersionFindings:
        """
        Run the battery for one version.

        Raises:
            ConnectionError: Dial failed
            HandshakeError: CONNACK missing, truncated or rejecting us
            LivenessError: First PINGREQ unanswered
        """
        findings = self.info.findings(version)
        connection = await self.manager.connect(version)
        try:
            if not await self.manager.pings_back(connection):
                raise LivenessError(
                    "Broker does not respond to PINGREQ",
                    details={"server": self.manager.server, "version": version.value},
                )

            for step in STEPS:
                connection = await self._recover(connection, step.recovery)
                value = await step.check(self, connection, findings)
                if value is not None:
                    setattr(findings, step.finding, value)
                logger.info(
                    "probe_result",
                    version=version.value,
                    finding=step.finding,
                    value=getattr(findings, step.finding),
                )
        finally:
            await self.manager.close(connection)

        return findings

    async def _recover(self, connection: Connection, recovery: Recovery) -> Connection:
        if recovery is Recovery.FORCED:
            return await self.manager.reconnect(connection)
        if recovery is Recovery.IF_DEAD:
            liveness = await self.manager.reconnect_if_dead(connection)
            if liveness.state is LivenessState.FATAL:
                raise liveness.error
            return liveness.connection
        return connection

    async def _exchange(self, connection: Connection, probe: Probe) -> Optional[bytes]:
        """Send a catalogue packet and read once; None on any I/O failure."""
        try:
            return await connection.exchange(packets.packet(connection.version, probe))
        except TransportError as e:
            logger.debug(
                "probe_io_failed",
                version=connection.version.value,
                probe=probe.value,
                error=e.message,
            )
            return None

    async def _acked(self, connection: Connection, probe: Probe, ack: Ack) -> bool:
        response = await self._exchange(connection, probe)
        return packets.matches(response, connection.version, ack)

    async def check_qos1(self, connection: Connection, findings: VersionFindings) -> bool:
        return await self._acked(connection, Probe.PUBLISH_QOS1, Ack.PUBACK)

    async def check_qos2(self, connection: Connection, findings: VersionFindings) -> bool:
        # PUBLISH -> PUBREC -> PUBREL -> PUBCOMP, all with packet id 1
        if not await self._acked(connection, Probe.PUBLISH_QOS2, Ack.PUBREC):
            return False
        return await self._acked(connection, Probe.PUBREL, Ack.PUBCOMP)

    async def check_qos3(self, connection: Connection, findings: VersionFindings) -> bool:
        response = await self._exchange(connection, Probe.PUBLISH_QOS3)
        return bool(response)

    async def check_subscribe_all(self, connection: Connection, findings: VersionFindings) -> bool:
        return await self._acked(connection, Probe.SUBSCRIBE_ALL, Ack.SUBACK_QOS0)

    async def check_invalid_topics(self, connection: Connection, findings: VersionFindings) -> bool:
        return await self._acked(connection, Probe.SUBSCRIBE_INVALID, Ack.SUBACK_QOS0)

    async def check_invalid_utf8(self, connection: Connection, findings: VersionFindings) -> bool:
        return await self._acked(connection, Probe.SUBSCRIBE_INVALID_UTF8, Ack.SUBACK_QOS0)

    async def check_publish_sys(self, connection: Connection, findings: VersionFindings) -> bool:
        return await self._acked(connection, Probe.PUBLISH_SYS, Ack.PUBACK)

    async def check_filter_sys(
        self, connection: Connection, findings: VersionFindings
    ) -> Optional[bool]:
        """
        Subscribe to the topic we published to and see if the retained
        message comes back. Only meaningful once the publish was accepted.
        """
        if not findings.publish_sys:
            return None

        version = connection.version
        try:
            await connection.send(packets.packet(version, Probe.SUBSCRIBE_SYS_TOPIC))
            await asyncio.sleep(self.sys_echo_wait_sec)
            response = await connection.recv()
        except TransportError as e:
            logger.debug("probe_io_failed", version=version.value, probe="filter_sys", error=e.message)
            return None

        if packets.matches(response, version, Ack.SYS_ECHO):
            return False
        return None


STEPS = (
    Step("qos1", Recovery.NONE, ProbeSequencer.check_qos1),
    Step("qos2", Recovery.IF_DEAD, ProbeSequencer.check_qos2),
    Step("qos3_response", Recovery.IF_DEAD, ProbeSequencer.check_qos3),
    Step("subscribe_all", Recovery.IF_DEAD, ProbeSequencer.check_subscribe_all),
    # a "#" subscription may flood the session, start clean
    Step("invalid_topics", Recovery.FORCED, ProbeSequencer.check_invalid_topics),
    Step("invalid_utf8_topic", Recovery.IF_DEAD, ProbeSequencer.check_invalid_utf8),
    Step("publish_sys", Recovery.IF_DEAD, ProbeSequencer.check_publish_sys),
    # retained messages are delivered on subscribe, so use a new session
    Step("filter_sys", Recovery.FORCED, ProbeSequencer.check_filter_sys),
)
