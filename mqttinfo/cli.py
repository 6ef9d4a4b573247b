"""
mqttinfo command line

Probes one broker and prints what it supports. With --json the result
record is also appended as one line to mqttinfo.json.
"""
import argparse
import asyncio
import sys
from importlib.metadata import PackageNotFoundError, version as package_version
from typing import Optional

import structlog
from pydantic import ValidationError

from mqttinfo.config import settings
from mqttinfo.engine.orchestrator import Orchestrator, Phase
from mqttinfo.exceptions import ConfigurationError, MqttInfoError
from mqttinfo.logging import setup_logging
from mqttinfo.models import BrokerInfo, Credentials, ProtocolVersion

logger = structlog.get_logger()

COLORS = {
    "reset": "\033[0m",
    "green": "\033[92m",
    "red": "\033[91m",
}


class ConsoleReporter:
    """Prints each phase's findings as it completes"""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self._color_enabled = self.stream.isatty()

    def _print(self, text: str = "") -> None:
        print(text, file=self.stream)

    def _res(self, value: bool) -> str:
        if not self._color_enabled:
            return "YES" if value else "NO"
        color = COLORS["green"] if value else COLORS["red"]
        return f"{color}{'YES' if value else 'NO'}{COLORS['reset']}"

    def __call__(
        self,
        phase: Phase,
        version: Optional[ProtocolVersion],
        info: BrokerInfo,
        error: Optional[MqttInfoError] = None,
    ) -> None:
        if phase is Phase.FINGERPRINT:
            if error is not None:
                self._print(f"Failed: {error.message}")
            else:
                self._print(f"looks like {info.type_guessed}")
            return

        label = version.label
        if info.failed:
            if phase is Phase.SUPPORT:
                self._print(f"{label} check failed: {info.error}")
            else:
                self._print(f"Analysis failed: {info.error}")
            return

        f = info.findings(version)
        if phase is Phase.SUPPORT:
            self._print(f"{label} support\t{self._res(f.supported)}")
            if f.supported:
                self._print(f"needs authentication\t{self._res(not f.anonymous)}")
            return

        # YES marks the conformant behaviour
        self._print(f"supports QoS1\t\t{self._res(f.qos1)}")
        self._print(f"supports QoS2\t\t{self._res(f.qos2)}")
        self._print(f"rejects QoS3\t\t{self._res(not f.qos3_response)}")
        self._print(f"forbids subscribe to #\t{self._res(not f.subscribe_all)}")
        self._print(f"rejects invalid topic\t{self._res(not f.invalid_topics)}")
        self._print(f"rejects invalid UTF-8\t{self._res(not f.invalid_utf8_topic)}")
        self._print(f"rejects $SYS publishs\t{self._res(not f.publish_sys)}")
        if f.publish_sys:
            self._print(f"filters $SYS publishs\t{self._res(f.filter_sys)}")

    def announce(self, text: str) -> None:
        self._print()
        self._print(text)


class _AnnouncingOrchestrator(Orchestrator):
    """Prints a heading before each phase starts"""

    def __init__(self, info: BrokerInfo, reporter: ConsoleReporter):
        super().__init__(info, observer=reporter)
        self.reporter = reporter

    async def check_support(self, version: ProtocolVersion) -> bool:
        self.reporter.announce(f"Checking {version.label} broker interface...")
        return await super().check_support(version)

    async def analyze(self, version: ProtocolVersion) -> bool:
        self.reporter.announce(f"Analyzing {version.label} broker interface...")
        return await super().analyze(version)

    async def guess(self) -> str:
        self.reporter.announce("Trying to guess broker software...")
        return await super().guess()


def banner() -> str:
    try:
        return f"mqttinfo - version {package_version('mqttinfo')}"
    except PackageNotFoundError:
        return "mqttinfo - development version"


def build_parser() -> argparse.ArgumentParser:
    # -h is the host, as in other MQTT tools; help is --help only
    parser = argparse.ArgumentParser(
        prog="mqttinfo",
        description="Probe an MQTT broker for supported features and guess its implementation",
        add_help=False,
    )
    parser.add_argument("-h", "--host", default=settings.default_host, help="MQTT broker to connect to")
    parser.add_argument("-p", "--port", type=int, default=settings.default_port, help="network port to connect to")
    parser.add_argument("-u", "--user", default="", help="username, if authentication is needed")
    parser.add_argument("-P", "--pwd", default="", help="password, if authentication is needed")
    parser.add_argument(
        "-j",
        "--json",
        action="store_true",
        help=f"append JSON-formatted output to {settings.json_output_path}",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log probe details to stderr")
    parser.add_argument("--help", action="help", help="shows this")
    return parser


def build_broker_info(args: argparse.Namespace) -> BrokerInfo:
    """
    Validate arguments before any probing starts.

    Raises:
        ConfigurationError: Target or credentials are unusable
    """
    try:
        credentials = Credentials(username=args.user, password=args.pwd)
        return BrokerInfo(host=args.host, port=args.port, credentials=credentials)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(problems, details={"errors": len(e.errors())}) from e


def write_json(info: BrokerInfo) -> None:
    path = settings.json_output_path
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(info.to_json() + "\n")
    except OSError as e:
        print(f"Error writing {path}: {e}")
        logger.error("json_write_failed", path=str(path), error=str(e))


async def run_cli(args: argparse.Namespace, info: BrokerInfo) -> BrokerInfo:
    reporter = ConsoleReporter()
    print(banner())
    print(f"\nTarget: {info.server}")
    orchestrator = _AnnouncingOrchestrator(info, reporter)
    return await orchestrator.run()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        info = build_broker_info(args)
    except ConfigurationError as e:
        parser.error(e.message)

    setup_logging("mqttinfo", level="DEBUG" if args.verbose else None, log_to_file=args.verbose)

    info = asyncio.run(run_cli(args, info))

    if args.json:
        write_json(info)

    return 1 if info.failed else 0


if __name__ == "__main__":
    sys.exit(main())
