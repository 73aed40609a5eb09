"""
Pulse scheduler: one accepted trigger becomes "1" now and "0" after the pulse.

At most one pulse is pending. The trailing "0" is delivered from tick(), so
the intake loop never waits for it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

PAYLOAD_ON = "1"
PAYLOAD_OFF = "0"

Publisher = Callable[[str, str], bool]


@dataclass(frozen=True, slots=True)
class PendingPulse:
    topic: str
    fire_at: float


class PulseScheduler:
    def __init__(
        self,
        publisher: Publisher,
        pulse_duration_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._publish = publisher
        self.pulse_duration_s = pulse_duration_s
        self._clock = clock
        self._pending: Optional[PendingPulse] = None

    @property
    def pending(self) -> Optional[PendingPulse]:
        return self._pending

    @property
    def next_deadline(self) -> Optional[float]:
        return self._pending.fire_at if self._pending else None

    def on_trigger(self, topic: str) -> bool:
        """
        Publish "1" and schedule the "0". Returns True if a pulse was scheduled.
        A failed "1" drops the trigger; a trigger during a pending pulse is ignored.
        """
        if self._pending is not None:
            logger.info("Pulse already pending on %s; trigger ignored", self._pending.topic)
            return False
        if not self._publish(topic, PAYLOAD_ON):
            logger.error("Trigger dropped: could not publish %r to %s", PAYLOAD_ON, topic)
            return False
        # Deadline counts from the moment "1" actually went out.
        self._pending = PendingPulse(topic=topic, fire_at=self._clock() + self.pulse_duration_s)
        return True

    def tick(self, now: float) -> bool:
        """
        Deliver the trailing "0" once due. The pending pulse is cleared whether
        or not that publish succeeds. Returns True when a pulse was consumed.
        """
        pulse = self._pending
        if pulse is None or now < pulse.fire_at:
            return False
        self._pending = None
        if not self._publish(pulse.topic, PAYLOAD_OFF):
            logger.error("Pulse end lost: could not publish %r to %s", PAYLOAD_OFF, pulse.topic)
        return True
