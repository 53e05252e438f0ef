"""
Breeze Portal entrypoint.

CLI:
  breeze-portal serve                       -> run the device registry against the broker
  breeze-portal emulate --id ID [...]       -> run one emulated ESP device
  breeze-portal simulate                    -> run the default four-device fleet
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from breeze_portal.config import ConfigError, load_config, package_version
from breeze_portal.log_config import configure_logging
from breeze_portal.models import DeviceType

logger = logging.getLogger(__name__)

DEVICE_TYPES = [t.value for t in DeviceType if t is not DeviceType.UNKNOWN]


@dataclass
class Runtime:
    shutdown: threading.Event
    report_interval_s: float = 60.0


def _install_signal_handlers(rt: Runtime) -> None:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; requesting shutdown", signum)
        rt.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _load_config_or_none():
    try:
        return load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return None


def run_portal(rt: Optional[Runtime] = None) -> int:
    """
    Server mode: subscribe to device traffic and keep the registry current.
    Returns process exit code.
    """
    from breeze_portal.portal import Portal

    cfg = _load_config_or_none()
    if cfg is None:
        return 2

    rt = rt or Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    logger.info("============================================================")
    logger.info("Breeze Portal")
    logger.info("Version: %s", cfg.version)
    logger.info("Broker: %s:%s  namespace: %s", cfg.mqtt_host, cfg.mqtt_port, cfg.namespace)
    logger.info("============================================================")

    portal = Portal(cfg)
    if not portal.start():
        return 1

    try:
        while not rt.shutdown.wait(timeout=rt.report_interval_s):
            logger.info("Registry: %s", portal.summary())
    finally:
        portal.stop()
    return 0


def run_emulator(args: argparse.Namespace, rt: Optional[Runtime] = None) -> int:
    from breeze_portal.emulator import DeviceEmulator

    cfg = _load_config_or_none()
    if cfg is None:
        return 2

    rt = rt or Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    emulator = DeviceEmulator(cfg, args.id, args.name, args.type, auto_mode=args.auto)
    logger.info("ESP Device Emulator: %s (%s, %s) auto=%s", emulator.device_id, emulator.name, emulator.device_type, args.auto)
    if not emulator.go_online():
        return 1

    try:
        rt.shutdown.wait()
    finally:
        emulator.close()
    return 0


def run_simulation(rt: Optional[Runtime] = None) -> int:
    from breeze_portal.fleet import Fleet

    cfg = _load_config_or_none()
    if cfg is None:
        return 2

    rt = rt or Runtime(shutdown=threading.Event())
    _install_signal_handlers(rt)

    Fleet(cfg).run(rt.shutdown)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="breeze-portal")
    p.add_argument("--version", action="version", version=package_version())
    p.add_argument("--log-level", metavar="LEVEL", help="Log level (default: BREEZE_LOG_LEVEL or INFO)")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("serve", help="Run the device registry against the MQTT broker")

    emulate = sub.add_parser("emulate", help="Run one emulated ESP device")
    emulate.add_argument("-i", "--id", required=True, help="Device ID, e.g. esp32-livingroom")
    emulate.add_argument("-n", "--name", help="Device name (default: 'ESP Device <id>')")
    emulate.add_argument("-t", "--type", default=DeviceType.ESP32.value, choices=DEVICE_TYPES, help="Device type")
    emulate.add_argument("-a", "--auto", action="store_true", help="Random state changes and network flaps")

    sub.add_parser("simulate", help="Run the default four-device fleet")

    return p


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.cmd == "serve":
        raise SystemExit(run_portal())

    if args.cmd == "emulate":
        raise SystemExit(run_emulator(args))

    if args.cmd == "simulate":
        raise SystemExit(run_simulation())

    raise SystemExit(2)


if __name__ == "__main__":
    main()
