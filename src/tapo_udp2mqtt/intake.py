"""
UDP intake: receive doorbell datagrams and classify them as triggers.

Only the datagram length and the source address are looked at; the payload
itself is opaque.
"""

from __future__ import annotations

import logging
import select
import socket
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)

RCVBUF_BYTES = 256 * 1024
MAX_DATAGRAM = 65535


@dataclass(frozen=True, slots=True)
class TriggerFilter:
    min_length: int
    allowed_prefix: str  # "" accepts any source
    debounce_s: float


@dataclass(slots=True)
class DebounceState:
    # -inf so the very first datagram is never debounced, whatever the clock origin
    last_trigger: float = float("-inf")


@dataclass(frozen=True, slots=True)
class RawDatagram:
    data: bytes
    source_address: str
    source_port: int


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    source_address: str
    source_port: int
    length: int
    at: float


def source_allowed(address: str, allowed_prefix: str) -> bool:
    if not allowed_prefix:
        return True
    return address.startswith(allowed_prefix)


def classify(
    datagram: RawDatagram,
    now: float,
    trigger_filter: TriggerFilter,
    state: DebounceState,
) -> Optional[TriggerEvent]:
    """
    Apply length, source and debounce filters. An accepted datagram moves the
    debounce window to ``now``; rejected ones leave it untouched.
    """
    if len(datagram.data) < trigger_filter.min_length:
        return None
    if not source_allowed(datagram.source_address, trigger_filter.allowed_prefix):
        return None
    if now - state.last_trigger < trigger_filter.debounce_s:
        return None
    state.last_trigger = now
    return TriggerEvent(
        source_address=datagram.source_address,
        source_port=datagram.source_port,
        length=len(datagram.data),
        at=now,
    )


class UDPIntake:
    """Non-blocking UDP listener owning its socket."""

    def __init__(self, bind_address: str, port: int, trigger_filter: TriggerFilter) -> None:
        self.bind_address = bind_address
        self.port = port
        self.trigger_filter = trigger_filter
        self.debounce = DebounceState()
        self._sock: Optional[socket.socket] = None

    @property
    def bound_port(self) -> int:
        if self._sock is None:
            return self.port
        return self._sock.getsockname()[1]

    def open(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, RCVBUF_BYTES)
            except OSError as exc:
                logger.debug("SO_RCVBUF not applied: %s", exc)
            sock.bind((self.bind_address, self.port))
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._sock = sock

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()

    def receive(self) -> Optional[RawDatagram]:
        """One datagram, or None when nothing is queued."""
        if self._sock is None:
            raise RuntimeError("UDP intake not open")
        try:
            data, (address, port, *_) = self._sock.recvfrom(MAX_DATAGRAM)
        except BlockingIOError:
            return None
        return RawDatagram(data=data, source_address=address, source_port=port)

    def drain_and_classify(self, clock: Callable[[], float]) -> Iterator[TriggerEvent]:
        """
        Read every queued datagram and yield the ones that qualify.
        ``clock`` is read once per datagram.
        A hard receive error ends this drain; the next call starts over.
        """
        while True:
            try:
                datagram = self.receive()
            except OSError as exc:
                logger.warning("UDP receive failed: %s", exc)
                return
            if datagram is None:
                return
            event = classify(datagram, clock(), self.trigger_filter, self.debounce)
            if event is None:
                logger.debug(
                    "UDP ignored from %s:%d len=%d",
                    datagram.source_address,
                    datagram.source_port,
                    len(datagram.data),
                )
                continue
            yield event

    def wait(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds for a datagram. True if one is readable."""
        if self._sock is None:
            return False
        readable, _, _ = select.select([self._sock], [], [], max(0.0, timeout))
        return bool(readable)
