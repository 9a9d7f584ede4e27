import json

import pytest

from mbmd.snips import ControlSnip, RuntimeInfo
from mbmd.status import DeviceDescriptor, DeviceInfo, Status


def make_status():
    info = DeviceInfo(
        {
            "SDM1.1": DeviceDescriptor(type="SDM", manufacturer="Eastron", model="SDM630"),
            "DZG1.2": DeviceDescriptor(type="DZG", manufacturer="DZG", model="DVH4013"),
        }
    )
    return Status(info)


def test_unknown_device_is_offline():
    assert make_status().online("nope") is False


def test_record_tracks_online_state():
    status = make_status()
    status.record(ControlSnip("SDM1.1", RuntimeInfo(online=True)))
    assert status.online("SDM1.1") is True
    status.record(ControlSnip("SDM1.1", RuntimeInfo(online=False)))
    assert status.online("SDM1.1") is False


def test_device_info_unknown_returns_empty_descriptor():
    assert DeviceInfo().device_descriptor_by_id("x") == DeviceDescriptor()


def test_to_dict_meters_sorted_with_type_from_descriptor():
    status = make_status()
    status.consume(
        [
            ControlSnip("SDM1.1", RuntimeInfo(online=True)),
            ControlSnip("DZG1.2", RuntimeInfo(online=False)),
        ]
    )
    meters = status.to_dict()["Meters"]
    assert [m["Device"] for m in meters] == ["DZG1.2", "SDM1.1"]
    assert meters[1]["Type"] == "Eastron"
    assert meters[0]["Online"] is False


def test_rates_are_proportional_to_counts():
    status = make_status()
    status.record(ControlSnip("SDM1.1", RuntimeInfo(online=True, requests=10, errors=4)))
    meter = status.to_dict()["Meters"][0]
    assert meter["Requests"] == 10
    assert meter["Errors"] == 4
    assert meter["RequestsPerMinute"] > 0
    assert meter["RequestsPerMinute"] / meter["ErrorsPerMinute"] == pytest.approx(10 / 4)


def test_to_json_round_trip():
    status = make_status()
    status.record(ControlSnip("SDM1.1", RuntimeInfo(online=True)))
    data = json.loads(status.to_json())
    assert set(data) == {"StartTime", "UpTime", "Goroutines", "Memory", "Meters"}
    assert data["Meters"][0]["Device"] == "SDM1.1"
    assert data["Memory"]["Alloc"] > 0
    assert data["UpTime"] >= 0
    assert data["StartTime"].endswith("Z")


def test_empty_status_has_no_meters():
    assert make_status().to_dict()["Meters"] == []