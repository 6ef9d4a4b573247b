"""
Orchestrator - runs a complete probing session against one broker.

Order: v3.1.1 support, v5.0 support, analysis of each supported version,
then the implementation guess. A fatal error in any of the first four
phases marks the record failed and stops the run; the guess is best effort.
"""
from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

import structlog

from mqttinfo.engine.connection_manager import (
    ConnectionManager,
    Fatal,
    Supported,
)
from mqttinfo.engine.fingerprint import FingerprintClassifier
from mqttinfo.engine.prober import ProbeSequencer
from mqttinfo.exceptions import HandshakeError, MqttInfoError
from mqttinfo.models import BrokerInfo, ProtocolVersion

logger = structlog.get_logger()


class Phase(str, Enum):
    SUPPORT = "support"
    ANALYSIS = "analysis"
    FINGERPRINT = "fingerprint"


# called as observer(phase, version, info, error); error is set when the phase failed
PhaseObserver = Callable[
    [Phase, Optional[ProtocolVersion], BrokerInfo, Optional[MqttInfoError]], None
]


class Orchestrator:
    """Drives the engine components over one BrokerInfo."""

    def __init__(
        self,
        info: BrokerInfo,
        manager: Optional[ConnectionManager] = None,
        sys_echo_wait_sec: Optional[float] = None,
        observer: Optional[PhaseObserver] = None,
    ):
        self.info = info
        self.manager = manager or ConnectionManager.for_broker(info)
        self.sequencer = ProbeSequencer(self.manager, info, sys_echo_wait_sec=sys_echo_wait_sec)
        self.classifier = FingerprintClassifier(self.manager, info)
        self.observer = observer

    def _notify(
        self,
        phase: Phase,
        version: Optional[ProtocolVersion] = None,
        error: Optional[MqttInfoError] = None,
    ) -> None:
        if self.observer is not None:
            self.observer(phase, version, self.info, error)

    def _fail(self, phase: Phase, version: Optional[ProtocolVersion], error: MqttInfoError) -> None:
        self.info.mark_failed(error)
        logger.error(
            "phase_failed",
            phase=phase.value,
            version=version.value if version else None,
            server=self.info.server,
            error=error.message,
            details=error.details,
        )
        self._notify(phase, version, error)

    async def check_support(self, version: ProtocolVersion) -> bool:
        """Record whether the broker speaks version; False if the run must stop."""
        findings = self.info.findings(version)
        try:
            outcome = await self.manager.check_connection(version)
        except MqttInfoError as e:
            self._fail(Phase.SUPPORT, version, e)
            return False

        if isinstance(outcome, Fatal):
            error = HandshakeError(f"CONNACK: {outcome.reason}", reason_code=outcome.reason_code)
            self._fail(Phase.SUPPORT, version, error)
            return False

        findings.supported = isinstance(outcome, Supported)
        findings.anonymous = isinstance(outcome, Supported) and outcome.anonymous
        self._notify(Phase.SUPPORT, version)
        return True

    async def analyze(self, version: ProtocolVersion) -> bool:
        """Run the probe battery for a supported version; False if the run must stop."""
        try:
            await self.sequencer.analyze(version)
        except MqttInfoError as e:
            self._fail(Phase.ANALYSIS, version, e)
            return False

        self._notify(Phase.ANALYSIS, version)
        return True

    async def guess(self) -> str:
        guessed = await self.classifier.classify()
        self._notify(Phase.FINGERPRINT, error=self.classifier.error)
        return guessed

    async def run(self) -> BrokerInfo:
        logger.info("run_started", server=self.info.server)
        versions = (ProtocolVersion.V3_1_1, ProtocolVersion.V5_0)

        for version in versions:
            if not await self.check_support(version):
                return self.info

        for version in versions:
            if self.info.findings(version).supported and not await self.analyze(version):
                return self.info

        await self.guess()
        logger.info(
            "run_completed",
            server=self.info.server,
            type_guessed=self.info.type_guessed,
        )
        return self.info
