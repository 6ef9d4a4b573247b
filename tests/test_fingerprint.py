"""
Tests for the FingerprintClassifier decision rules.
"""
import pytest

from mock_broker import MockBroker, V4, connack_v4
from mqttinfo.engine.connection_manager import ConnectionManager
from mqttinfo.engine.fingerprint import (
    HIVEMQ,
    MOSQUITTO,
    RULES,
    VERNEMQ,
    FingerprintClassifier,
    Observation,
    Rule,
)
from mqttinfo.engine.packets import Probe
from mqttinfo.models import UNKNOWN_BROKER, BrokerInfo

SUBACK = b"\x90\x03\x00\x01\x00"
SYS_MESSAGE = b"\x30\x0f\x00\x0b$SYS/uptime\x31\x32"


def make_classifier(broker: MockBroker, publish_sys: bool = False, rules=RULES):
    info = BrokerInfo(host="127.0.0.1", port=broker.port)
    info.v4.publish_sys = publish_sys
    manager = ConnectionManager(
        "127.0.0.1",
        broker.port,
        dial_timeout_sec=1.0,
        read_timeout_sec=0.2,
    )
    return FingerprintClassifier(manager, info, rules=rules), info


def sys_replies(**responses):
    probes = {
        "all": Probe.SUBSCRIBE_SYS_ALL,
        "router": Probe.SUBSCRIBE_SYS_ROUTER,
        "load": Probe.SUBSCRIBE_SYS_LOAD,
    }
    table = {}
    for name, response in responses.items():
        table.update(MockBroker.reply(V4, probes[name], response))
    return table


def test_rules_end_with_offline_fallback():
    assert [rule.verdict for rule in RULES] == [HIVEMQ, VERNEMQ, MOSQUITTO, HIVEMQ]
    assert RULES[-1].probe is None


@pytest.mark.asyncio
async def test_sys_acknowledged_but_silent_is_hivemq():
    async with MockBroker(sys_replies(all=SUBACK)) as broker:
        classifier, info = make_classifier(broker, publish_sys=True)
        guessed = await classifier.classify()

    assert guessed == HIVEMQ
    assert info.type_guessed == HIVEMQ
    assert info.failed is False
    assert broker.connections == 1


@pytest.mark.asyncio
async def test_router_statistics_is_vernemq():
    table = sys_replies(all=SUBACK + SYS_MESSAGE, router=SUBACK + SYS_MESSAGE)
    async with MockBroker(table) as broker:
        classifier, info = make_classifier(broker)
        assert await classifier.classify() == VERNEMQ

    assert broker.connections == 2


@pytest.mark.asyncio
async def test_load_statistics_with_sys_publish_is_mosquitto():
    table = sys_replies(all=SUBACK + SYS_MESSAGE, router=SUBACK, load=SUBACK + SYS_MESSAGE)
    async with MockBroker(table) as broker:
        classifier, info = make_classifier(broker, publish_sys=True)
        assert await classifier.classify() == MOSQUITTO


@pytest.mark.asyncio
async def test_no_sys_traffic_without_sys_publish_falls_back_to_hivemq():
    async with MockBroker() as broker:
        classifier, info = make_classifier(broker, publish_sys=False)
        assert await classifier.classify() == HIVEMQ

    assert broker.connections == 3


@pytest.mark.asyncio
async def test_nothing_matches_stays_unknown():
    async with MockBroker() as broker:
        classifier, info = make_classifier(broker, publish_sys=True)
        assert await classifier.classify() == UNKNOWN_BROKER

    assert info.type_guessed == UNKNOWN_BROKER


@pytest.mark.asyncio
async def test_connection_failure_is_not_an_error():
    async with MockBroker(connack={0x04: connack_v4(0x05)}) as broker:
        classifier, info = make_classifier(broker)
        assert await classifier.classify() == UNKNOWN_BROKER

    assert info.failed is False
    assert classifier.error is not None
    assert "rejected" in classifier.error.message


@pytest.mark.asyncio
async def test_custom_rules_are_evaluated_in_order():
    rules = (
        Rule("never", None, lambda obs, info: False, "first"),
        Rule("always", None, lambda obs, info: True, "second"),
        Rule("unreached", None, lambda obs, info: True, "third"),
    )
    async with MockBroker() as broker:
        classifier, info = make_classifier(broker, rules=rules)
        assert await classifier.classify() == "second"

    assert broker.connections == 0
    assert classifier.error is None


def test_observation_defaults():
    assert Observation() == Observation(acknowledged=False, message_received=False)
