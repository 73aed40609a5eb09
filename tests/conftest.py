"""
Pytest configuration and shared fixtures
"""
import os
import socket
import sys
from typing import Optional

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from tapo_udp2mqtt import wire  # noqa: E402

CONNACK_OK = b"\x20\x02\x00\x00"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBroker:
    """
    Connector stand-in for socket.create_connection.

    Every call hands out one end of a socketpair, pre-loaded with the
    configured CONNACK; the other end is kept so tests can read what the
    client sent or close it to break the connection.
    """

    def __init__(self, connack: bytes = CONNACK_OK):
        self.connack = connack
        self.fail_with: Optional[Exception] = None
        self.calls = []
        self.peers = []
        self._buffers = {}

    def __call__(self, address, timeout):
        self.calls.append((address, timeout))
        if self.fail_with is not None:
            raise self.fail_with
        client, peer = socket.socketpair()
        if self.connack:
            peer.sendall(self.connack)
        self.peers.append(peer)
        return client

    @property
    def peer(self) -> socket.socket:
        return self.peers[-1]

    def received(self, index: int = -1) -> bytes:
        """Everything the client has sent so far on one connection."""
        index %= len(self.peers)
        out = self._buffers.setdefault(index, bytearray())
        peer = self.peers[index]
        peer.setblocking(False)
        try:
            while True:
                chunk = peer.recv(65536)
                if not chunk:
                    break
                out.extend(chunk)
        except BlockingIOError:
            pass
        return bytes(out)

    def packets(self, index: int = -1) -> list:
        """Split everything the client sent on one connection into whole packets."""
        data = self.received(index)
        packets = []
        offset = 0
        while offset < len(data):
            remaining, body_start = wire.decode_varint(data, offset + 1)
            end = body_start + remaining
            packets.append(data[offset:end])
            offset = end
        return packets

    def publishes(self, index: int = -1) -> list:
        """(topic, payload) for each PUBLISH sent on one connection."""
        out = []
        for pkt in self.packets(index):
            if pkt[0] != wire.PUBLISH:
                continue
            _, body = wire.decode_varint(pkt, 1)
            topic_len = (pkt[body] << 8) | pkt[body + 1]
            topic = pkt[body + 2:body + 2 + topic_len].decode("utf-8")
            out.append((topic, pkt[body + 2 + topic_len:]))
        return out

    def close(self) -> None:
        for peer in self.peers:
            peer.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker():
    b = FakeBroker()
    yield b
    b.close()


@pytest.fixture
def bridge_env(monkeypatch):
    """Set up a complete bridge environment"""
    env_vars = {
        'MQTT_HOST': 'broker.test.local',
        'MQTT_TOPIC': 'tapo/doorbell',
        'MQTT_PORT': '1883',
        'UDP_PORT': '20005',
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars
