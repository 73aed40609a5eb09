"""
MQTT 3.1.1 wire codec for the publish-only bridge client.

Pure functions: no sockets, no shared state. Packet type bytes and the
protocol level come from paho so the values match what every other MQTT
client on the network speaks.
"""

from __future__ import annotations

import paho.mqtt.client as mqtt

MAX_VARINT = 268_435_455  # 4 bytes of 7-bit groups

CONNECT = mqtt.CONNECT
CONNACK = mqtt.CONNACK
PUBLISH = mqtt.PUBLISH
PINGREQ = mqtt.PINGREQ
PINGRESP = mqtt.PINGRESP
DISCONNECT = mqtt.DISCONNECT

PROTOCOL_NAME = "MQTT"
PROTOCOL_LEVEL = int(mqtt.MQTTv311)
CLEAN_SESSION = 0x02


class ProtocolError(ValueError):
    """Raised when bytes received from the broker do not form the expected packet."""


def encode_u16(n: int) -> bytes:
    if not 0 <= n <= 0xFFFF:
        raise ValueError(f"u16 out of range: {n}")
    return bytes((n >> 8, n & 0xFF))


def encode_string(s: str | bytes) -> bytes:
    """Length-prefixed UTF-8 string (2-byte big-endian byte count)."""
    raw = s.encode("utf-8") if isinstance(s, str) else bytes(s)
    return encode_u16(len(raw)) + raw


def encode_varint(n: int) -> bytes:
    """
    Remaining-length encoding: 7 bits per byte, least significant group first,
    continuation bit 0x80 on every byte but the last.
    """
    if not 0 <= n <= MAX_VARINT:
        raise ValueError(f"remaining length out of range: {n}")
    out = bytearray()
    while True:
        digit = n % 128
        n //= 128
        if n > 0:
            digit |= 0x80
        out.append(digit)
        if n == 0:
            return bytes(out)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """
    Decode a remaining-length field starting at ``offset``.

    Returns (value, offset just past the field).
    """
    value = 0
    multiplier = 1
    for _ in range(4):
        if offset >= len(data):
            raise ProtocolError("truncated remaining length")
        byte = data[offset]
        offset += 1
        value += (byte & 0x7F) * multiplier
        if not byte & 0x80:
            return value, offset
        multiplier *= 128
    raise ProtocolError("remaining length longer than 4 bytes")


def _packet(header: int, body: bytes = b"") -> bytes:
    return bytes((header,)) + encode_varint(len(body)) + body


def encode_connect(client_id: str, keepalive: int) -> bytes:
    """CONNECT with clean session, no will, no credentials."""
    variable_header = (
        encode_string(PROTOCOL_NAME)
        + bytes((PROTOCOL_LEVEL, CLEAN_SESSION))
        + encode_u16(keepalive)
    )
    return _packet(CONNECT, variable_header + encode_string(client_id))


def encode_publish(topic: str, payload: bytes | str) -> bytes:
    """QoS 0 PUBLISH, retain and dup flags clear."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return _packet(PUBLISH, encode_string(topic) + payload)


def encode_pingreq() -> bytes:
    return _packet(PINGREQ)


def encode_disconnect() -> bytes:
    return _packet(DISCONNECT)


def decode_connack(data: bytes) -> int:
    """
    Validate a complete CONNACK packet and return its connect return code.

    Raises ProtocolError on a wrong packet type, wrong remaining length or
    short input.
    """
    if len(data) < 4:
        raise ProtocolError(f"CONNACK too short ({len(data)} bytes)")
    if data[0] != CONNACK:
        raise ProtocolError(f"Unexpected CONNACK header 0x{data[0]:02x}")
    if data[1] != 0x02:
        raise ProtocolError(f"Unexpected CONNACK length {data[1]}")
    return data[3]


def describe_connack(rc: int) -> str:
    return mqtt.connack_string(rc)
