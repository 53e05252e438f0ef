from __future__ import annotations

import threading
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

import breeze_portal.main as m
from breeze_portal.config import ConfigError


@pytest.fixture(autouse=True)
def no_signal_handlers(monkeypatch):
    monkeypatch.setattr(m, "_install_signal_handlers", lambda rt: None)


@pytest.fixture
def stopped_runtime():
    rt = m.Runtime(shutdown=threading.Event(), report_interval_s=0.01)
    rt.shutdown.set()
    return rt


def test_parser_requires_subcommand():
    p = m.build_parser()
    with pytest.raises(SystemExit):
        p.parse_args([])


def test_version_flag_exits(monkeypatch):
    with pytest.raises(SystemExit) as exc:
        m.main(["--version"])
    assert exc.value.code == 0


def test_emulate_parser():
    args = m.build_parser().parse_args(["emulate", "-i", "esp32-kitchen", "-t", "ESP8266", "--auto"])
    assert args.id == "esp32-kitchen"
    assert args.type == "ESP8266"
    assert args.auto is True
    assert args.name is None


def test_emulate_rejects_unknown_type():
    with pytest.raises(SystemExit):
        m.build_parser().parse_args(["emulate", "-i", "x", "-t", "unknown"])


def test_emulate_requires_id():
    with pytest.raises(SystemExit):
        m.build_parser().parse_args(["emulate"])


@pytest.mark.parametrize(
    "argv, target",
    [(["serve"], "run_portal"), (["simulate"], "run_simulation")],
)
def test_main_exits_with_run_code(monkeypatch, argv, target):
    monkeypatch.setattr(m, "configure_logging", lambda level: None)
    monkeypatch.setattr(m, target, lambda: 7)
    with pytest.raises(SystemExit) as exc:
        m.main(argv)
    assert exc.value.code == 7


def test_main_emulate(monkeypatch):
    monkeypatch.setattr(m, "configure_logging", lambda level: None)
    seen = {}

    def fake_run(args):
        seen["id"] = args.id
        return 0

    monkeypatch.setattr(m, "run_emulator", fake_run)
    with pytest.raises(SystemExit) as exc:
        m.main(["--log-level", "DEBUG", "emulate", "--id", "lamp"])
    assert exc.value.code == 0
    assert seen["id"] == "lamp"


def test_config_error_exits_2(monkeypatch):
    def bad():
        raise ConfigError("MQTT_PORT out of range: 0")

    monkeypatch.setattr(m, "load_config", bad)
    assert m.run_portal() == 2
    assert m.run_simulation() == 2


def test_run_portal_returns_1_when_start_fails(monkeypatch, portal_config):
    monkeypatch.setattr(m, "load_config", lambda: portal_config)
    fake_portal = MagicMock()
    fake_portal.start.return_value = False
    monkeypatch.setattr("breeze_portal.portal.Portal", lambda cfg: fake_portal)

    assert m.run_portal() == 1
    fake_portal.stop.assert_not_called()


def test_run_portal_stops_on_shutdown(monkeypatch, portal_config, stopped_runtime):
    monkeypatch.setattr(m, "load_config", lambda: portal_config)
    fake_portal = MagicMock()
    fake_portal.start.return_value = True
    monkeypatch.setattr("breeze_portal.portal.Portal", lambda cfg: fake_portal)

    assert m.run_portal(stopped_runtime) == 0
    fake_portal.stop.assert_called_once()


def test_run_emulator_goes_online_then_closes(monkeypatch, portal_config, stopped_runtime):
    monkeypatch.setattr(m, "load_config", lambda: replace(portal_config, namespace="home"))
    fake_emu = MagicMock()
    fake_emu.go_online.return_value = True
    created = {}

    def ctor(cfg, device_id, name, device_type, auto_mode):
        created.update(cfg=cfg, device_id=device_id, auto_mode=auto_mode)
        return fake_emu

    monkeypatch.setattr("breeze_portal.emulator.DeviceEmulator", ctor)
    args = m.build_parser().parse_args(["emulate", "-i", "lamp"])

    assert m.run_emulator(args, stopped_runtime) == 0
    assert created["device_id"] == "lamp"
    assert created["cfg"].namespace == "home"
    fake_emu.close.assert_called_once()


def test_run_emulator_connect_failure(monkeypatch, portal_config, stopped_runtime):
    monkeypatch.setattr(m, "load_config", lambda: portal_config)
    fake_emu = MagicMock()
    fake_emu.go_online.return_value = False
    monkeypatch.setattr("breeze_portal.emulator.DeviceEmulator", lambda *a, **k: fake_emu)
    args = m.build_parser().parse_args(["emulate", "-i", "lamp"])
    assert m.run_emulator(args, stopped_runtime) == 1


def test_run_simulation(monkeypatch, portal_config, stopped_runtime):
    monkeypatch.setattr(m, "load_config", lambda: portal_config)
    fake_fleet = MagicMock()
    monkeypatch.setattr("breeze_portal.fleet.Fleet", lambda cfg: fake_fleet)
    assert m.run_simulation(stopped_runtime) == 0
    fake_fleet.run.assert_called_once_with(stopped_runtime.shutdown)
