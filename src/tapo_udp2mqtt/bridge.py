"""
Event loop tying UDP intake, pulse scheduler and MQTT session together.

One tick:
1. drain every queued datagram; each qualifying trigger starts a pulse
2. deliver a due trailing "0"
3. keepalive: ping when due, otherwise drain broker input
   (or, while disconnected, a throttled reconnect attempt)
4. wait on the UDP socket until the next tick or the pulse deadline
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from tapo_udp2mqtt.config import BridgeConfig
from tapo_udp2mqtt.intake import UDPIntake
from tapo_udp2mqtt.scheduler import PulseScheduler
from tapo_udp2mqtt.session import MQTTSession

logger = logging.getLogger(__name__)

DEFAULT_TICK_S = 0.02


class Bridge:
    def __init__(
        self,
        config: BridgeConfig,
        session: MQTTSession,
        intake: UDPIntake,
        scheduler: PulseScheduler,
        *,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: float = DEFAULT_TICK_S,
    ) -> None:
        self.config = config
        self.session = session
        self.intake = intake
        self.scheduler = scheduler
        self.tick_interval = tick_interval
        self._clock = clock
        self._last_connect_attempt = float("-inf")

    def start(self) -> None:
        """Bind the UDP socket, log the banner and make a first connect attempt."""
        cfg = self.config
        self.intake.open()
        logger.info(
            "Listening UDP %s:%d (min_len=%d, allowed_prefix=%s, debounce=%.2fs)",
            cfg.bind_address,
            self.intake.bound_port,
            cfg.min_length,
            cfg.allowed_prefix or "<any>",
            cfg.debounce_s,
        )
        logger.info(
            "MQTT -> %s:%d topic=%s (keepalive=%ds, pulse=%dms)",
            cfg.mqtt_host,
            cfg.mqtt_port,
            cfg.mqtt_topic,
            cfg.keepalive,
            cfg.pulse_ms,
        )
        self._last_connect_attempt = self._clock()
        self.session.ensure_open()

    def stop(self) -> None:
        self.session.disconnect()
        self.intake.close()
        logger.info("Bridge stopped")

    def run_once(self) -> None:
        """Steps 1-3 of a tick. Never raises on broker or network trouble."""
        for event in self.intake.drain_and_classify(self._clock):
            logger.info(
                "UDP trigger from %s:%d len=%d -> MQTT pulse",
                event.source_address,
                event.source_port,
                event.length,
            )
            self.scheduler.on_trigger(self.config.mqtt_topic)

        now = self._clock()
        self.scheduler.tick(now)

        if self.session.connected:
            self.session.service_keepalive(now)
        else:
            self._maybe_reconnect(now)

    def _maybe_reconnect(self, now: float) -> None:
        interval = self.config.reconnect_s
        if interval <= 0 or now - self._last_connect_attempt < interval:
            return
        self._last_connect_attempt = now
        self.session.ensure_open()

    def wait_timeout(self, now: float) -> float:
        timeout = self.tick_interval
        deadline = self.scheduler.next_deadline
        if deadline is not None:
            timeout = min(timeout, deadline - now)
        return max(0.0, timeout)

    def run(self, shutdown: threading.Event) -> None:
        self.start()
        try:
            while not shutdown.is_set():
                self.run_once()
                self.intake.wait(self.wait_timeout(self._clock()))
        finally:
            self.stop()


def build_bridge(config: BridgeConfig, *, clock: Callable[[], float] = time.monotonic) -> Bridge:
    session = MQTTSession(
        config.mqtt_host,
        config.mqtt_port,
        keepalive=config.keepalive,
        clock=clock,
    )
    scheduler = PulseScheduler(session.publish_with_retry, config.pulse_s, clock=clock)
    intake = UDPIntake(config.bind_address, config.udp_port, config.trigger_filter())
    return Bridge(config, session, intake, scheduler, clock=clock)
