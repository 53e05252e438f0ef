"""
Fleet simulator: a handful of emulated devices in one process.

Devices connect with a small random stagger; once a minute one random device
has a 10% chance to flip its state.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Callable, Iterable, Optional

from breeze_portal.config import PortalConfig
from breeze_portal.emulator import DeviceEmulator

logger = logging.getLogger(__name__)

DEFAULT_FLEET: tuple[tuple[str, str, str], ...] = (
    ("esp32-001", "Living Room Light", "ESP32"),
    ("esp8266-001", "Kitchen Fan", "ESP8266"),
    ("esp32-s3-001", "Bedroom AC", "ESP32-S3"),
    ("esp32-c3-001", "Garden Sprinkler", "ESP32-C3"),
)

MAX_STAGGER_S = 2.0
RANDOM_CHANGE_INTERVAL_S = 60.0
RANDOM_CHANGE_PROBABILITY = 0.1

EmulatorFactory = Callable[[PortalConfig, str, str, str], DeviceEmulator]


class Fleet:
    def __init__(
        self,
        cfg: PortalConfig,
        devices: Iterable[tuple[str, str, str]] = DEFAULT_FLEET,
        *,
        rng: Optional[random.Random] = None,
        emulator_factory: Optional[EmulatorFactory] = None,
    ) -> None:
        self._rng = rng or random.Random()
        factory = emulator_factory or (
            lambda c, device_id, name, device_type: DeviceEmulator(c, device_id, name, device_type)
        )
        self.emulators = [factory(cfg, device_id, name, device_type) for device_id, name, device_type in devices]

    def start(self, stop: threading.Event) -> None:
        logger.info("Starting %d device simulator(s)...", len(self.emulators))
        for emulator in self.emulators:
            if stop.wait(timeout=self._rng.uniform(0, MAX_STAGGER_S)):
                return
            emulator.go_online()

    def random_change(self) -> Optional[DeviceEmulator]:
        """Maybe toggle one random device. Returns the device that changed, if any."""
        if not self.emulators:
            return None
        emulator = self._rng.choice(self.emulators)
        if emulator.is_online and self._rng.random() < RANDOM_CHANGE_PROBABILITY:
            if emulator.toggle_state():
                logger.info("[%s] Random state change to: %s", emulator.device_id, emulator.state.value)
                return emulator
        return None

    def run(self, stop: threading.Event, interval_s: float = RANDOM_CHANGE_INTERVAL_S) -> None:
        """Block until stop is set, then take every device offline."""
        try:
            self.start(stop)
            while not stop.wait(timeout=interval_s):
                self.random_change()
        finally:
            self.stop()

    def stop(self) -> None:
        logger.info("Shutting down device simulators...")
        for emulator in self.emulators:
            try:
                emulator.close()
            except Exception:
                logger.exception("Error stopping emulator %s", emulator.device_id)
