"""
tapo-udp2mqtt entrypoint.

CLI:
  tapo-udp2mqtt [mqtt_host] [mqtt_topic] [mqtt_port] [udp_port] [min_len]
                [allowed_prefix] [debounce_s] [pulse_ms] [bind_ip]

Positional arguments override the matching environment variables
(MQTT_HOST, MQTT_TOPIC, ...); anything not given falls back to the
environment, env files, then built-in defaults.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any, Optional

from tapo_udp2mqtt.bridge import build_bridge
from tapo_udp2mqtt.config import BridgeConfig, ConfigError, load_config
from tapo_udp2mqtt.log_config import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_USAGE = 2

# (argparse dest, config key) in positional order
POSITIONALS = (
    ("mqtt_host", "MQTT_HOST"),
    ("mqtt_topic", "MQTT_TOPIC"),
    ("mqtt_port", "MQTT_PORT"),
    ("udp_port", "UDP_PORT"),
    ("min_len", "UDP_MIN_LEN"),
    ("allowed_prefix", "UDP_ALLOWED_PREFIX"),
    ("debounce_s", "DEBOUNCE_S"),
    ("pulse_ms", "PULSE_MS"),
    ("bind_ip", "UDP_BIND"),
)
OPTIONS = (
    ("keepalive", "MQTT_KEEPALIVE"),
    ("reconnect", "MQTT_RECONNECT_S"),
)

EPILOG = """\
Example:
  tapo-udp2mqtt 192.168.66.10 tapo/doorbell 1883 20005 24 192.168.4. 1.0 500 0.0.0.0

Pass "" as allowed_prefix to accept datagrams from any source.
"""


def get_version_string() -> str:
    try:
        return pkg_version("tapo-udp2mqtt")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _install_signal_handlers(shutdown: threading.Event) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="tapo-udp2mqtt",
        description='Turn doorbell UDP broadcasts into an MQTT pulse ("1" then "0").',
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("--version", action="version", version=get_version_string())

    p.add_argument("mqtt_host", nargs="?", help="MQTT broker IP/host (MQTT_HOST)")
    p.add_argument("mqtt_topic", nargs="?", help='topic receiving "1" then "0" (MQTT_TOPIC)')
    p.add_argument("mqtt_port", nargs="?", help="broker port, default 1883 (MQTT_PORT)")
    p.add_argument("udp_port", nargs="?", help="UDP listen port, default 20005 (UDP_PORT)")
    p.add_argument("min_len", nargs="?", help="drop datagrams shorter than this, default 24 (UDP_MIN_LEN)")
    p.add_argument(
        "allowed_prefix",
        nargs="?",
        help='accepted source address prefix, default "192.168.4." (UDP_ALLOWED_PREFIX)',
    )
    p.add_argument("debounce_s", nargs="?", help="ignore repeats inside this window, default 1.0 (DEBOUNCE_S)")
    p.add_argument("pulse_ms", nargs="?", help='delay between "1" and "0", default 500 (PULSE_MS)')
    p.add_argument("bind_ip", nargs="?", help="UDP bind address, default 0.0.0.0 (UDP_BIND)")

    p.add_argument("--keepalive", metavar="SECONDS", help="MQTT keepalive, default 30, 0 disables (MQTT_KEEPALIVE)")
    p.add_argument(
        "--reconnect",
        metavar="SECONDS",
        help="background reconnect interval, default 10, 0 disables (MQTT_RECONNECT_S)",
    )
    p.add_argument("--log-level", metavar="LEVEL", help="log level, default INFO (TAPO_LOG_LEVEL)")
    p.add_argument("--no-dotenv", action="store_true", help="do not read env files")
    return p


def overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for dest, key in POSITIONALS + OPTIONS:
        value = getattr(args, dest, None)
        if value is not None:
            out[key] = value
    return out


def run_bridge(cfg: BridgeConfig, shutdown: Optional[threading.Event] = None) -> int:
    """
    Runtime mode: listen for UDP, publish pulses, block until shutdown.
    Returns process exit code.
    """
    if shutdown is None:
        shutdown = threading.Event()
        _install_signal_handlers(shutdown)

    logger.info("============================================================")
    logger.info("tapo-udp2mqtt")
    logger.info("Version: %s", get_version_string())
    logger.info("============================================================")

    bridge = build_bridge(cfg)
    try:
        bridge.run(shutdown)
    except OSError as exc:
        logger.error("Bridge stopped on socket error: %s", exc)
        return EXIT_RUNTIME
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(overrides_from_args(args), dotenv_enabled=not args.no_dotenv)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        parser.print_usage(sys.stderr)
        raise SystemExit(EXIT_USAGE)

    # env files may have set TAPO_LOG_LEVEL
    configure_logging(args.log_level)
    raise SystemExit(run_bridge(cfg))


if __name__ == "__main__":
    main()
