"""
Publish-only MQTT 3.1.1 session over one TCP socket.

State machine: Disconnected -> open() -> Connected -> (I/O failure | close()) -> Disconnected.
The only blocking step is the bounded CONNECT/CONNACK handshake inside open();
afterwards the socket is non-blocking and every read or write returns
immediately.
"""

from __future__ import annotations

import logging
import select
import socket
import time
import uuid
from typing import Callable, Optional

from tapo_udp2mqtt import wire
from tapo_udp2mqtt.wire import ProtocolError

logger = logging.getLogger(__name__)

MAX_HANDSHAKE_PACKET = 4096
_RECV_CHUNK = 1024

Connector = Callable[[tuple[str, int], float], socket.socket]


class ConnectError(RuntimeError):
    """Raised when a session cannot be established (TCP, CONNACK or broker rejection)."""


class PublishError(RuntimeError):
    """Raised when a send on an established session fails."""


def new_client_id() -> str:
    return f"tapo_udp_{uuid.uuid4().hex[:6]}_{int(time.time())}"


def _close_quietly(sock: socket.socket) -> None:
    try:
        sock.close()
    except OSError as exc:
        logger.debug("Socket close error ignored: %s", exc)


class PacketReader:
    """
    Buffered reader returning whole MQTT packets from a blocking socket.

    Reads are sized by the fixed header, never by assumed field widths, so a
    packet split across TCP segments is reassembled instead of misparsed.
    """

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._buf = bytearray()

    def read_exact(self, n: int) -> bytes:
        while len(self._buf) < n:
            chunk = self._sock.recv(_RECV_CHUNK)
            if not chunk:
                raise ProtocolError("connection closed by broker")
            self._buf.extend(chunk)
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out

    def read_packet(self, max_length: int = MAX_HANDSHAKE_PACKET) -> bytes:
        header = self.read_exact(1)
        length_field = bytearray()
        while True:
            byte = self.read_exact(1)
            length_field += byte
            if not byte[0] & 0x80 or len(length_field) == 4:
                break
        remaining, _ = wire.decode_varint(bytes(length_field))
        if remaining > max_length:
            raise ProtocolError(f"packet too large during handshake ({remaining} bytes)")
        return header + bytes(length_field) + self.read_exact(remaining)


class MQTTSession:
    """
    One broker connection, owned exclusively by this object.

    publish()/ping() require a connected session and raise PublishError;
    publish_with_retry() is the policy layer the scheduler uses.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        keepalive: int = 30,
        connect_timeout: float = 4.0,
        connack_timeout: float = 3.0,
        send_timeout: float = 2.0,
        connector: Connector = socket.create_connection,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.host = host
        self.port = port
        self.keepalive = keepalive
        self.connect_timeout = connect_timeout
        self.connack_timeout = connack_timeout
        self.send_timeout = send_timeout

        self._connector = connector
        self._clock = clock
        self._sock: Optional[socket.socket] = None
        self._client_id: Optional[str] = None
        self._last_activity = 0.0

    @property
    def connected(self) -> bool:
        return self._sock is not None

    @property
    def client_id(self) -> Optional[str]:
        return self._client_id

    @property
    def last_activity(self) -> float:
        return self._last_activity

    # -------------------------
    # Lifecycle
    # -------------------------
    def open(self) -> None:
        """Connect, handshake, switch to non-blocking. Raises ConnectError."""
        self.close()
        client_id = new_client_id()
        try:
            sock = self._connector((self.host, self.port), self.connect_timeout)
        except (OSError, UnicodeError) as exc:
            raise ConnectError(f"TCP connect to {self.host}:{self.port} failed: {exc}") from exc

        try:
            sock.settimeout(self.connack_timeout)
            sock.sendall(wire.encode_connect(client_id, self.keepalive))
            rc = wire.decode_connack(PacketReader(sock).read_packet())
        except socket.timeout as exc:
            _close_quietly(sock)
            raise ConnectError(f"No CONNACK within {self.connack_timeout:.1f}s") from exc
        except ProtocolError as exc:
            _close_quietly(sock)
            raise ConnectError(f"Bad CONNACK: {exc}") from exc
        except OSError as exc:
            _close_quietly(sock)
            raise ConnectError(f"Handshake failed: {exc}") from exc

        if rc != 0:
            _close_quietly(sock)
            raise ConnectError(f"CONNACK rc={rc} ({wire.describe_connack(rc)})")

        sock.setblocking(False)
        self._sock = sock
        self._client_id = client_id
        self._last_activity = self._clock()
        logger.info("Connected to MQTT broker %s:%d as %s", self.host, self.port, client_id)

    def ensure_open(self) -> bool:
        """
        Return True if connected, attempting exactly one open() when not.
        Never retries; the caller decides when to try again.
        """
        if self._sock is not None:
            return True
        try:
            self.open()
        except ConnectError as exc:
            logger.error("MQTT connect failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is not None:
            _close_quietly(sock)

    def disconnect(self) -> None:
        """Send DISCONNECT (best effort) and close. Used at shutdown."""
        if self._sock is not None:
            try:
                self._send(wire.encode_disconnect(), "disconnect")
            except PublishError as exc:
                logger.debug("MQTT disconnect not sent: %s", exc)
        self.close()

    # -------------------------
    # Output
    # -------------------------
    def _send(self, data: bytes, what: str) -> None:
        sock = self._sock
        if sock is None:
            raise PublishError(f"{what}: not connected")

        view = memoryview(data)
        offset = 0
        deadline = time.monotonic() + self.send_timeout
        while offset < len(data):
            try:
                sent = sock.send(view[offset:])
            except BlockingIOError:
                sent = 0
            except OSError as exc:
                self.close()
                raise PublishError(f"{what} failed after {offset}/{len(data)} bytes: {exc}") from exc
            if sent:
                offset += sent
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.close()
                raise PublishError(f"{what} stalled after {offset}/{len(data)} bytes")
            select.select([], [sock], [], remaining)

        self._last_activity = self._clock()

    def publish(self, topic: str, payload: bytes | str) -> None:
        self._send(wire.encode_publish(topic, payload), f"publish({payload!r})")

    def ping(self) -> None:
        self._send(wire.encode_pingreq(), "ping")

    def publish_with_retry(self, topic: str, payload: bytes | str) -> bool:
        """
        Publish once; on failure reconnect and retry exactly once.

        Returns False (session left disconnected) when the retry also fails
        or no connection can be made.
        """
        if not self.ensure_open():
            return False
        try:
            self.publish(topic, payload)
            return True
        except PublishError as exc:
            logger.warning("MQTT publish(%s) failed: %s (reconnect)", payload, exc)

        self.close()
        if not self.ensure_open():
            return False
        try:
            self.publish(topic, payload)
        except PublishError as exc:
            logger.error("MQTT publish(%s) retry failed: %s", payload, exc)
            self.close()
            return False
        return True

    # -------------------------
    # Input / keepalive
    # -------------------------
    def drain_incoming(self) -> int:
        """
        Discard whatever the broker has sent (PINGRESP and anything unsolicited).
        Stops at would-block. EOF or a read error closes the session.
        Returns the number of bytes discarded.
        """
        discarded = 0
        while self._sock is not None:
            try:
                chunk = self._sock.recv(_RECV_CHUNK)
            except BlockingIOError:
                break
            except OSError as exc:
                logger.warning("MQTT read failed: %s (closing)", exc)
                self.close()
                break
            if not chunk:
                logger.warning("MQTT broker closed the connection")
                self.close()
                break
            discarded += len(chunk)
        return discarded

    def keepalive_due(self, now: float) -> bool:
        if self._sock is None or self.keepalive <= 0:
            return False
        return now - self._last_activity >= self.keepalive / 2

    def service_keepalive(self, now: Optional[float] = None) -> None:
        """Ping when half the keepalive interval has passed idle, else drain."""
        if self._sock is None:
            return
        if now is None:
            now = self._clock()
        if self.keepalive_due(now):
            try:
                self.ping()
            except PublishError as exc:
                logger.error("MQTT ping failed: %s", exc)
                return
        self.drain_incoming()
