"""
Tests for the ProbeSequencer feature battery.

Tests cover:
- Individual findings (QoS levels, subscriptions, $SYS handling)
- Soft failures leaving findings at their defaults
- Phase aborts when the broker never answers PINGREQ
- Recovery of dead connections between steps
- Phase aborts when a reopen is refused, keeping earlier findings
"""
import pytest
from unittest.mock import patch

from mock_broker import MockBroker, V4, V5
from mqttinfo.engine import packets
from mqttinfo.engine.connection_manager import ConnectionManager
from mqttinfo.engine.packets import Ack, Probe
from mqttinfo.engine.prober import STEPS, ProbeSequencer, Recovery
from mqttinfo.exceptions import HandshakeError, LivenessError
from mqttinfo.models import BrokerInfo, VersionFindings

PUBACK = b"\x40\x02\x00\x01"
PUBACK_V5_NO_SUBSCRIBERS = b"\x40\x03\x00\x01\x10"
PUBREC = b"\x50\x02\x00\x01"
PUBCOMP = b"\x70\x02\x00\x01"
SUBACK_V4 = b"\x90\x03\x00\x01\x00"
SUBACK_V5 = b"\x90\x04\x00\x01\x00\x00"


def make_sequencer(broker: MockBroker):
    info = BrokerInfo(host="127.0.0.1", port=broker.port)
    manager = ConnectionManager(
        "127.0.0.1",
        broker.port,
        dial_timeout_sec=1.0,
        read_timeout_sec=0.2,
    )
    return ProbeSequencer(manager, info, sys_echo_wait_sec=0.05), info


def replies(version, *pairs):
    table = {}
    for probe, response in pairs:
        table.update(MockBroker.reply(version, probe, response))
    return table


def test_battery_order():
    assert [step.finding for step in STEPS] == [
        "qos1",
        "qos2",
        "qos3_response",
        "subscribe_all",
        "invalid_topics",
        "invalid_utf8_topic",
        "publish_sys",
        "filter_sys",
    ]
    assert STEPS[0].recovery is Recovery.NONE
    assert STEPS[4].recovery is Recovery.FORCED
    assert STEPS[7].recovery is Recovery.FORCED


def test_battery_covers_every_finding():
    assert {step.finding for step in STEPS} == set(VersionFindings.model_fields) - {
        "supported",
        "anonymous",
    }


@pytest.mark.asyncio
async def test_puback_only_broker():
    async with MockBroker(replies(V4, (Probe.PUBLISH_QOS1, PUBACK))) as broker:
        sequencer, info = make_sequencer(broker)
        findings = await sequencer.analyze(V4)

    assert findings is info.v4
    assert findings.qos1 is True
    assert findings.qos2 is False
    assert findings.qos3_response is False
    assert findings.subscribe_all is False
    assert findings.publish_sys is False
    assert findings.filter_sys is True
    assert info.failed is False


@pytest.mark.asyncio
async def test_silent_broker_aborts_both_versions():
    async with MockBroker(answer_ping=False) as broker:
        sequencer, info = make_sequencer(broker)

        with pytest.raises(LivenessError, match="PINGREQ"):
            await sequencer.analyze(V4)
        with pytest.raises(LivenessError):
            await sequencer.analyze(V5)

    assert info.v4 == VersionFindings()
    assert info.v5 == VersionFindings()


@pytest.mark.asyncio
async def test_rejected_handshake_aborts():
    async with MockBroker(connack={0x04: b"\x20\x02\x00\x05"}) as broker:
        sequencer, info = make_sequencer(broker)

        with pytest.raises(HandshakeError):
            await sequencer.analyze(V4)

    assert info.v4 == VersionFindings()


@pytest.mark.asyncio
async def test_qos2_full_chain():
    table = replies(V4, (Probe.PUBLISH_QOS2, PUBREC), (Probe.PUBREL, PUBCOMP))
    async with MockBroker(table) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V4)

    assert info.v4.qos2 is True
    assert info.v4.qos1 is False


@pytest.mark.asyncio
async def test_qos2_broken_chain():
    async with MockBroker(replies(V4, (Probe.PUBLISH_QOS2, PUBREC))) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V4)

    assert info.v4.qos2 is False


@pytest.mark.asyncio
async def test_v5_accepts_extended_acks():
    table = replies(
        V5,
        (Probe.PUBLISH_QOS1, PUBACK_V5_NO_SUBSCRIBERS),
        (Probe.PUBLISH_QOS2, b"\x50\x03\x00\x01\x10"),
        (Probe.PUBREL, PUBCOMP),
    )
    async with MockBroker(table) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V5)

    assert info.v5.qos1 is True
    assert info.v5.qos2 is True
    assert info.v4 == VersionFindings()


@pytest.mark.asyncio
async def test_any_response_to_reserved_qos_counts():
    async with MockBroker(replies(V5, (Probe.PUBLISH_QOS3, b"\xe0\x00"))) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V5)

    assert info.v5.qos3_response is True


@pytest.mark.asyncio
async def test_permissive_subscriptions():
    table = replies(
        V4,
        (Probe.SUBSCRIBE_ALL, SUBACK_V4),
        (Probe.SUBSCRIBE_INVALID, SUBACK_V4),
        (Probe.SUBSCRIBE_INVALID_UTF8, SUBACK_V4),
    )
    async with MockBroker(table) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V4)

    assert info.v4.subscribe_all is True
    assert info.v4.invalid_topics is True
    assert info.v4.invalid_utf8_topic is True


@pytest.mark.asyncio
async def test_suback_failure_code_is_not_permissive():
    table = replies(V5, (Probe.SUBSCRIBE_INVALID, b"\x90\x04\x00\x01\x00\x8f"))
    async with MockBroker(table) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V5)

    assert info.v5.invalid_topics is False


@pytest.mark.asyncio
async def test_sys_publish_echoed_back():
    echo = packets.patterns(V4, Ack.SUBACK_QOS1)[0] + packets.packet(V4, Probe.PUBLISH_SYS)
    table = replies(
        V4,
        (Probe.PUBLISH_SYS, PUBACK),
        (Probe.SUBSCRIBE_SYS_TOPIC, echo),
    )
    async with MockBroker(table) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V4)

    assert info.v4.publish_sys is True
    assert info.v4.filter_sys is False


@pytest.mark.asyncio
async def test_sys_publish_filtered():
    table = replies(
        V5,
        (Probe.PUBLISH_SYS, PUBACK),
        (Probe.SUBSCRIBE_SYS_TOPIC, b"\x90\x04\x00\x01\x00\x01"),
    )
    async with MockBroker(table) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V5)

    assert info.v5.publish_sys is True
    assert info.v5.filter_sys is True


@pytest.mark.asyncio
async def test_sys_subscription_skipped_when_publish_rejected():
    async with MockBroker() as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V4)

    assert packets.packet(V4, Probe.SUBSCRIBE_SYS_TOPIC) not in broker.received
    assert info.v4.filter_sys is True


@pytest.mark.asyncio
async def test_recovers_after_broker_drops_connection():
    table = replies(V4, (Probe.SUBSCRIBE_INVALID_UTF8, SUBACK_V4))
    dropped = MockBroker.reply(V4, Probe.PUBLISH_QOS3, b"")
    async with MockBroker(table, disconnect_on=dropped) as broker:
        sequencer, info = make_sequencer(broker)
        await sequencer.analyze(V4)

    assert info.v4.qos3_response is False
    assert info.v4.invalid_utf8_topic is True
    # initial, after the drop, and the two forced reconnects
    assert broker.connections == 4


@pytest.mark.asyncio
async def test_forced_reconnects_without_drops():
    async with MockBroker() as broker:
        sequencer, _ = make_sequencer(broker)
        await sequencer.analyze(V5)

    assert broker.connections == 3
    assert all(connect.version is V5 for connect in broker.connects)


def reopen_rejected(manager: ConnectionManager):
    """Let the first session open; every later one is refused by the broker."""
    real_connect = manager.connect
    opened = []

    async def connect(version):
        if opened:
            raise HandshakeError("Connection request rejected (code 5)", reason_code=5)
        opened.append(version)
        return await real_connect(version)

    return patch.object(manager, "connect", side_effect=connect)


@pytest.mark.asyncio
async def test_failed_reopen_after_drop_aborts_phase():
    table = replies(V4, (Probe.PUBLISH_QOS1, PUBACK))
    dropped = MockBroker.reply(V4, Probe.PUBLISH_QOS1, b"")
    async with MockBroker(table, disconnect_on=dropped) as broker:
        sequencer, info = make_sequencer(broker)
        with reopen_rejected(sequencer.manager):
            with pytest.raises(HandshakeError, match="rejected"):
                await sequencer.analyze(V4)

    # findings gathered before the abort stay on the record
    assert info.v4.qos1 is True
    assert info.v4.qos2 is False
    assert broker.connections == 1


@pytest.mark.asyncio
async def test_failed_forced_reopen_aborts_phase():
    table = replies(
        V4,
        (Probe.PUBLISH_QOS1, PUBACK),
        (Probe.SUBSCRIBE_ALL, SUBACK_V4),
    )
    async with MockBroker(table) as broker:
        sequencer, info = make_sequencer(broker)
        with reopen_rejected(sequencer.manager):
            with pytest.raises(HandshakeError):
                await sequencer.analyze(V4)

    assert info.v4.qos1 is True
    assert info.v4.subscribe_all is True
    assert info.v4.invalid_topics is False
    assert info.v4.publish_sys is False
    assert broker.connections == 1
