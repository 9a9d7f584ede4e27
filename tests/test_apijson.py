import json
from datetime import datetime, timedelta, timezone

from mbmd.apijson import api_data_json, kv_json
from mbmd.readings import Readings

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_kv_json_formats_floats_fixed():
    assert kv_json([("a", 1.5), ("b", "x")]) == '{"a":1.500000,"b":"x"}'


def test_kv_json_keeps_order():
    pairs = [("z", 1), ("a", 2), ("m", 3)]
    assert list(json.loads(kv_json(pairs))) == ["z", "a", "m"]


def test_kv_json_empty():
    assert json.loads(kv_json([])) == {}


def test_api_data_sorted_values_after_timestamps():
    ts = EPOCH + timedelta(seconds=1600000000)
    readings = Readings(timestamp=ts, values={"VoltageL1": 230.0, "CurrentL1": 1.0})
    raw = api_data_json(readings)
    data = json.loads(raw)
    assert list(data) == ["Timestamp", "Unix", "CurrentL1", "VoltageL1"]
    assert data["Unix"] == 1600000000
    assert '"VoltageL1":230.000000' in raw


def test_api_data_timestamp_round_trips():
    ts = datetime(2021, 3, 4, 5, 6, 7, 250000, tzinfo=timezone.utc)
    data = json.loads(api_data_json(Readings(timestamp=ts)))
    assert datetime.fromisoformat(data["Timestamp"].replace("Z", "+00:00")) == ts


def test_api_data_of_empty_readings():
    data = json.loads(api_data_json(Readings()))
    assert data["Timestamp"] == "0001-01-01T00:00:00Z"
    assert list(data) == ["Timestamp", "Unix"]


def test_api_data_integer_values_become_floats():
    readings = Readings(timestamp=EPOCH, values={"Power": 5})
    data = json.loads(api_data_json(readings))
    assert isinstance(data["Power"], float)
    assert data["Power"] == 5