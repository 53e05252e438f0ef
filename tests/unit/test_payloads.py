from __future__ import annotations

import pytest

from breeze_portal.models import DeviceState, DeviceType
from breeze_portal.payloads import (
    FieldValidationError,
    PayloadError,
    build_discovery,
    build_state,
    build_status,
    decode_payload,
    expect_bool,
    expect_enum,
    expect_int,
    expect_str,
    extract_fields,
)


def test_decode_json_object():
    assert decode_payload(b'{"state": "on", "timestamp": 1}') == {"state": "on", "timestamp": 1}


def test_decode_accepts_str():
    assert decode_payload('{"online": true}') == {"online": True}


@pytest.mark.parametrize("text", ["ON", " off \n", "On"])
def test_plain_on_off_text_synthesizes_state(text):
    out = decode_payload(text.encode())
    assert out["raw_message"] == text
    assert out["state"] == text.strip().lower()


def test_plain_text_is_wrapped():
    assert decode_payload(b"hello") == {"raw_message": "hello"}


def test_json_non_object_is_plain_text():
    # valid JSON, but not an object
    assert decode_payload(b"42") == {"raw_message": "42"}
    assert decode_payload(b"[1, 2]") == {"raw_message": "[1, 2]"}


def test_empty_payload():
    assert decode_payload(b"") == {"raw_message": ""}
    assert decode_payload(None) == {"raw_message": ""}


def test_non_utf8_raises():
    with pytest.raises(PayloadError):
        decode_payload(b"\xff\xfe\xfd")


def test_expect_int_rounds_floats_and_rejects_bools():
    assert expect_int({"v": -61.6}, "v") == -62
    assert expect_int({"v": 120}, "v") == 120
    assert expect_int({}, "v") is None
    with pytest.raises(FieldValidationError):
        expect_int({"v": True}, "v")
    with pytest.raises(FieldValidationError):
        expect_int({"v": "-60"}, "v")


def test_expect_int_minimum():
    with pytest.raises(FieldValidationError):
        expect_int({"uptime": -1}, "uptime", minimum=0)
    assert expect_int({"uptime": 0}, "uptime", minimum=0) == 0


@pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
def test_expect_int_rejects_non_finite(value):
    with pytest.raises(FieldValidationError):
        expect_int({"uptime": value}, "uptime")


def test_expect_str():
    assert expect_str({"name": "Lamp"}, "name") == "Lamp"
    assert expect_str({"name": None}, "name") is None
    with pytest.raises(FieldValidationError):
        expect_str({"name": 5}, "name")
    with pytest.raises(FieldValidationError):
        expect_str({"name": "  "}, "name")


def test_expect_enum():
    assert expect_enum({"type": "ESP32-S3"}, "type", DeviceType) is DeviceType.ESP32_S3
    assert expect_enum({"state": "on"}, "state", DeviceState) is DeviceState.ON
    with pytest.raises(FieldValidationError) as exc:
        expect_enum({"state": "flicker"}, "state", DeviceState)
    assert "on|off" in str(exc.value)


def test_expect_bool():
    assert expect_bool({"online": False}, "online") is False
    with pytest.raises(FieldValidationError):
        expect_bool({"online": "yes"}, "online")


def test_extract_fields_drops_invalid_and_keeps_valid(caplog):
    field_map = {
        "wifi_strength": ("wifi_strength", expect_int),
        "name": ("name", expect_str),
        "uptime": ("uptime", expect_int),
    }
    out = extract_fields({"wifi_strength": "strong", "name": "Lamp"}, field_map, context="lamp status")
    assert out == {"name": "Lamp"}
    assert "wifi_strength" in caplog.text


def test_builders():
    assert build_discovery("a", "Lamp", "ESP32", "1.0.0", "192.168.1.100", "AA:BB", "off") == {
        "id": "a",
        "name": "Lamp",
        "type": "ESP32",
        "firmware": "1.0.0",
        "ip": "192.168.1.100",
        "mac": "AA:BB",
        "state": "off",
    }
    assert build_status(True, -55, 30, 250000) == {
        "online": True,
        "wifi_strength": -55,
        "uptime": 30,
        "free_heap": 250000,
    }
    assert build_status(False) == {"online": False}
    assert build_state("on", 1700000000000) == {"state": "on", "timestamp": 1700000000000}
    assert isinstance(build_state("off")["timestamp"], int)
