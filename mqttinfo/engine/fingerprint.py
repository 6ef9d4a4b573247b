"""
Fingerprint Classifier - guesses the broker implementation.

An ordered list of rules, each optionally probing a broker-specific $SYS
topic on a fresh v3.1.1 connection. The first rule whose predicate holds
sets the guess; if none does the guess stays "unknown". Misclassification
is acceptable, so nothing here fails the run.

Must run after the v3.1.1 analysis, which provides publish_sys.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from mqttinfo.engine import packets
from mqttinfo.engine.connection_manager import ConnectionManager
from mqttinfo.engine.packets import Ack, Probe
from mqttinfo.exceptions import MqttInfoError, TransportError
from mqttinfo.models import BrokerInfo, ProtocolVersion

logger = structlog.get_logger()

HIVEMQ = "HiveMQ"
VERNEMQ = "VerneMQ"
MOSQUITTO = "mosquitto"


@dataclass(frozen=True)
class Observation:
    """What a $SYS subscription produced."""
    acknowledged: bool = False
    message_received: bool = False


Predicate = Callable[[Observation, BrokerInfo], bool]


@dataclass(frozen=True)
class Rule:
    name: str
    probe: Optional[Probe]
    predicate: Predicate
    verdict: str


RULES = (
    # HiveMQ does not publish $SYS traffic by default
    Rule(
        "sys_silent",
        Probe.SUBSCRIBE_SYS_ALL,
        lambda obs, info: obs.acknowledged and not obs.message_received,
        HIVEMQ,
    ),
    # only VerneMQ uses this topic
    Rule(
        "router_subscriptions",
        Probe.SUBSCRIBE_SYS_ROUTER,
        lambda obs, info: obs.acknowledged and obs.message_received,
        VERNEMQ,
    ),
    # mosquitto's $SYS layout, shared by some others; mosquitto also accepts $SYS publishes
    Rule(
        "load_messages_sent",
        Probe.SUBSCRIBE_SYS_LOAD,
        lambda obs, info: obs.acknowledged and obs.message_received and info.v4.publish_sys,
        MOSQUITTO,
    ),
    Rule(
        "rejects_sys_publish",
        None,
        lambda obs, info: not info.v4.publish_sys,
        HIVEMQ,
    ),
)


class FingerprintClassifier:
    """Evaluates RULES in order against one broker."""

    version = ProtocolVersion.V3_1_1

    def __init__(self, manager: ConnectionManager, info: BrokerInfo, rules=RULES):
        self.manager = manager
        self.info = info
        self.rules = rules
        self.error: Optional[MqttInfoError] = None

    async def classify(self) -> str:
        """
        Set info.type_guessed from the first matching rule and return it.

        If a probe connection fails the current guess is kept and the
        failure is left in self.error.
        """
        self.error = None
        for rule in self.rules:
            observation = Observation()
            if rule.probe is not None:
                try:
                    observation = await self._observe(rule.probe)
                except MqttInfoError as e:
                    self.error = e
                    logger.warning(
                        "fingerprint_aborted",
                        server=self.manager.server,
                        rule=rule.name,
                        error=e.message,
                    )
                    return self.info.type_guessed

            if rule.predicate(observation, self.info):
                logger.info("fingerprint_rule_fired", rule=rule.name, verdict=rule.verdict)
                self.info.type_guessed = rule.verdict
                return rule.verdict

        logger.info("fingerprint_no_match", server=self.manager.server)
        return self.info.type_guessed

    async def _observe(self, probe: Probe) -> Observation:
        """
        Subscribe on a fresh connection and wait one read window for traffic.

        Raises:
            MqttInfoError: Connection could not be opened
        """
        connection = await self.manager.connect(self.version)
        try:
            try:
                response = await connection.exchange(packets.packet(self.version, probe))
            except TransportError:
                return Observation()

            if not packets.matches(response, self.version, Ack.SUBACK_QOS0):
                return Observation()

            suback_size = len(packets.patterns(self.version, Ack.SUBACK_QOS0)[0])
            if len(response) > suback_size:
                # a message arrived together with the SUBACK
                return Observation(acknowledged=True, message_received=True)

            try:
                message = await connection.recv()
            except TransportError:
                return Observation(acknowledged=True)
            return Observation(acknowledged=True, message_received=bool(message))
        finally:
            await self.manager.close(connection)
