from __future__ import annotations

import logging
import socket

import pytest

from tapo_udp2mqtt import wire
from tapo_udp2mqtt.session import (
    ConnectError,
    MQTTSession,
    PacketReader,
    PublishError,
    new_client_id,
)
from tapo_udp2mqtt.wire import ProtocolError


@pytest.fixture
def session(broker, clock):
    s = MQTTSession(
        "broker.test.local",
        1883,
        keepalive=30,
        connack_timeout=0.2,
        send_timeout=0.1,
        connector=broker,
        clock=clock,
    )
    yield s
    s.close()


class TrickleSocket:
    """Accepts at most 3 bytes per send and reports would-block every other call."""

    def __init__(self):
        self.data = bytearray()
        self.calls = 0

    def send(self, buf):
        self.calls += 1
        if self.calls % 2 == 0:
            raise BlockingIOError()
        chunk = bytes(buf[:3])
        self.data.extend(chunk)
        return len(chunk)

    def close(self):
        pass


# -------------------------
# Handshake
# -------------------------
def test_open_sends_connect_and_goes_non_blocking(session, broker, clock):
    session.open()

    assert session.connected
    assert broker.calls == [(("broker.test.local", 1883), 4.0)]
    assert session.last_activity == clock.now

    packets = broker.packets()
    assert len(packets) == 1
    connect = packets[0]
    assert connect[0] == wire.CONNECT
    assert b"\x00\x04MQTT\x04\x02\x00\x1e" in connect
    assert session.client_id.encode() in connect

    # non-blocking: a read with nothing queued returns immediately
    assert session.drain_incoming() == 0


def test_each_open_uses_a_fresh_client_id(session, broker):
    session.open()
    first = session.client_id
    session.open()
    assert session.client_id != first
    assert session.client_id.startswith("tapo_udp_")


def test_new_client_id_format():
    parts = new_client_id().split("_")
    assert parts[:2] == ["tapo", "udp"]
    assert len(parts[2]) == 6
    assert parts[3].isdigit()


def test_open_tcp_failure_raises_connect_error(session, broker):
    broker.fail_with = ConnectionRefusedError("refused")
    with pytest.raises(ConnectError, match="TCP connect"):
        session.open()
    assert not session.connected


def test_open_unresolvable_host_name_raises_connect_error(clock):
    # a 64-character label cannot be IDNA-encoded; getaddrinfo raises UnicodeError
    s = MQTTSession("a" * 64 + ".example", 1883, clock=clock)
    with pytest.raises(ConnectError, match="TCP connect"):
        s.open()
    assert not s.connected


def test_ensure_open_logs_host_encoding_failure(session, broker, caplog):
    broker.fail_with = UnicodeError("label empty or too long")
    with caplog.at_level(logging.ERROR):
        assert session.ensure_open() is False
    assert "label empty or too long" in caplog.text
    assert not session.connected


def test_open_without_connack_times_out(session, broker):
    broker.connack = b""
    with pytest.raises(ConnectError, match="No CONNACK"):
        session.open()
    assert not session.connected


def test_open_with_malformed_connack(session, broker):
    broker.connack = b"\x30\x02\x00\x00"
    with pytest.raises(ConnectError, match="Bad CONNACK"):
        session.open()


def test_open_with_broker_rejection(session, broker):
    broker.connack = b"\x20\x02\x00\x05"
    with pytest.raises(ConnectError, match="rc=5"):
        session.open()
    assert not session.connected


def test_connack_split_across_reads_is_reassembled():
    client, peer = socket.socketpair()
    try:
        client.settimeout(1.0)
        peer.sendall(b"\x20")
        peer.sendall(b"\x02\x00")
        peer.sendall(b"\x00")
        assert wire.decode_connack(PacketReader(client).read_packet()) == 0
    finally:
        client.close()
        peer.close()


def test_packet_reader_rejects_oversized_handshake_packet():
    client, peer = socket.socketpair()
    try:
        client.settimeout(1.0)
        peer.sendall(b"\x20" + wire.encode_varint(100_000))
        with pytest.raises(ProtocolError, match="too large"):
            PacketReader(client).read_packet()
    finally:
        client.close()
        peer.close()


def test_packet_reader_eof():
    client, peer = socket.socketpair()
    try:
        client.settimeout(1.0)
        peer.sendall(b"\x20")
        peer.close()
        with pytest.raises(ProtocolError, match="closed"):
            PacketReader(client).read_packet()
    finally:
        client.close()


# -------------------------
# ensure_open / close
# -------------------------
def test_ensure_open_reuses_live_session(session, broker):
    assert session.ensure_open() is True
    assert session.ensure_open() is True
    assert len(broker.calls) == 1


def test_ensure_open_logs_and_returns_false_on_rejection(session, broker, caplog):
    broker.connack = b"\x20\x02\x00\x05"
    with caplog.at_level(logging.ERROR):
        assert session.ensure_open() is False
    assert "MQTT connect failed" in caplog.text
    assert "rc=5" in caplog.text
    assert len(broker.calls) == 1


def test_close_is_idempotent(session):
    session.close()
    session.close()
    session.open()
    session.close()
    session.close()
    assert not session.connected


def test_disconnect_sends_disconnect_packet(session, broker):
    session.open()
    session.disconnect()
    assert not session.connected
    assert broker.packets()[-1] == b"\xe0\x00"


def test_disconnect_when_never_opened(session):
    session.disconnect()
    assert not session.connected


# -------------------------
# publish / ping
# -------------------------
def test_publish_writes_qos0_packet_and_updates_activity(session, broker, clock):
    session.open()
    clock.advance(5)
    session.publish("tapo/doorbell", "1")

    assert broker.publishes() == [("tapo/doorbell", b"1")]
    assert session.last_activity == clock.now


def test_publish_requires_connection(session):
    with pytest.raises(PublishError, match="not connected"):
        session.publish("tapo/doorbell", "1")


def test_publish_hard_failure_closes_session(session, broker):
    session.open()
    broker.peer.close()
    with pytest.raises(PublishError):
        session.publish("tapo/doorbell", "1")
    assert not session.connected


def test_partial_sends_resume_from_written_offset(session, monkeypatch):
    monkeypatch.setattr("tapo_udp2mqtt.session.select.select", lambda r, w, x, t: ([], w, []))
    sock = TrickleSocket()
    session._sock = sock

    session.publish("tapo/doorbell", "1")

    assert bytes(sock.data) == wire.encode_publish("tapo/doorbell", "1")


def test_send_stalls_until_timeout_then_fails(session, broker):
    session.open()
    # nobody reads the broker end; the socket buffer fills up
    with pytest.raises(PublishError, match="stalled"):
        session.publish("tapo/doorbell", b"x" * (8 * 1024 * 1024))
    assert not session.connected


def test_ping_sends_pingreq(session, broker):
    session.open()
    session.ping()
    assert broker.packets()[-1] == b"\xc0\x00"


# -------------------------
# publish_with_retry
# -------------------------
def test_publish_with_retry_connects_lazily(session, broker):
    assert session.publish_with_retry("tapo/doorbell", "1") is True
    assert broker.publishes() == [("tapo/doorbell", b"1")]


def test_publish_with_retry_recovers_after_one_failure(session, broker, caplog):
    session.open()
    broker.peer.close()

    with caplog.at_level(logging.WARNING):
        assert session.publish_with_retry("tapo/doorbell", "1") is True

    assert "(reconnect)" in caplog.text
    assert len(broker.calls) == 2
    assert broker.publishes(1) == [("tapo/doorbell", b"1")]
    assert session.connected


def test_publish_with_retry_gives_up_after_second_failure(session, broker, monkeypatch, caplog):
    session.open()

    def always_fail(topic, payload):
        session.close()
        raise PublishError("boom")

    monkeypatch.setattr(session, "publish", always_fail)
    with caplog.at_level(logging.WARNING):
        assert session.publish_with_retry("tapo/doorbell", "1") is False

    assert "retry failed" in caplog.text
    assert len(broker.calls) == 2  # exactly one reconnect
    assert not session.connected


def test_publish_with_retry_fails_when_broker_unreachable(session, broker):
    broker.fail_with = ConnectionRefusedError("refused")
    assert session.publish_with_retry("tapo/doorbell", "1") is False
    assert len(broker.calls) == 1


def test_publish_with_retry_reconnect_refused(session, broker):
    session.open()
    broker.peer.close()
    broker.fail_with = ConnectionRefusedError("refused")

    assert session.publish_with_retry("tapo/doorbell", "1") is False
    assert not session.connected


# -------------------------
# drain / keepalive
# -------------------------
def test_drain_discards_pingresp(session, broker):
    session.open()
    broker.peer.sendall(bytes((wire.PINGRESP, 0)))
    assert session.drain_incoming() == 2
    assert session.connected


def test_drain_closes_on_broker_eof(session, broker, caplog):
    session.open()
    broker.received()  # unread data on close would turn EOF into a reset
    broker.peer.close()
    with caplog.at_level(logging.WARNING):
        session.drain_incoming()
    assert not session.connected
    assert "closed the connection" in caplog.text


def test_drain_when_disconnected_is_noop(session):
    assert session.drain_incoming() == 0


def test_keepalive_due_at_half_interval(session, clock):
    session.open()
    assert not session.keepalive_due(clock.now + 14.9)
    assert session.keepalive_due(clock.now + 15.0)


def test_keepalive_zero_never_due(broker, clock):
    s = MQTTSession("h", 1883, keepalive=0, connector=broker, clock=clock)
    s.open()
    assert not s.keepalive_due(clock.now + 10_000)
    s.close()


def test_service_keepalive_pings_when_due(session, broker, clock):
    session.open()
    clock.advance(15)
    session.service_keepalive()

    assert broker.packets()[-1] == b"\xc0\x00"
    assert session.last_activity == clock.now


def test_service_keepalive_only_drains_when_idle_is_short(session, broker, clock):
    session.open()
    broker.peer.sendall(b"\xd0\x00")
    clock.advance(5)
    session.service_keepalive()

    assert len(broker.packets()) == 1  # just the CONNECT
    assert session.drain_incoming() == 0  # PINGRESP already consumed


def test_service_keepalive_ping_failure_closes(session, broker, clock, caplog):
    session.open()
    broker.peer.close()
    clock.advance(15)
    with caplog.at_level(logging.ERROR):
        session.service_keepalive()
    assert not session.connected
    assert "MQTT ping failed" in caplog.text
