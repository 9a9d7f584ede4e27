# mbmd

`mbmd` is the serving side of an energy-meter data collector. It accepts
measurement results, keeps current and recent readings per device, tracks
device health, and hands the data on to several outputs:

- a JSON HTTP API, a small web UI and a WebSocket live feed (`mbmd.httpd`),
- plain MQTT topics (`mbmd.mqtt`),
- the Homie 4.0 MQTT convention (`mbmd.homie`),
- InfluxDB, written in line protocol over HTTP (`mbmd.influx`).

## What it does not do

The package does not talk to meters itself: there is no Modbus querying and
no scheduler that polls devices. Your code produces the `QuerySnip` and
`ControlSnip` objects and feeds them in. There is also no command-line
program; the pieces are wired together in Python.

## Messages

- `QuerySnip(device, measurement, value, timestamp, description)` is one
  measurement result. `str()` gives `Dev: <id>, IEC: <measurement>, Value: <v>`
  with three decimals; `to_dict()` / `to_json()` give the wire form with keys
  `Device`, `Value`, `IEC61850`, `Description` and `Timestamp` in Unix
  milliseconds.
- `ControlSnip(device, status)` carries a `RuntimeInfo` with `online`,
  `requests` and `errors`. `RuntimeInfo.available(online)` sets the state and
  remembers when a device went offline; `is_queryable()` returns
  `(queryable, offline_timeout_elapsed)`, where an offline device becomes
  queryable again one second after its last failure.
- `snip_runner(run)` and `control_runner(run)` wrap a consumer so that it
  receives only `QuerySnip` or only `ControlSnip` items; any other item raises
  `TypeError`.

## Fan-out

`Broadcaster(source)` replicates every item of an iterable to each attached
recipient. `attach()` returns an iterator of your own; `attach_runner(func)`
runs `func` in a thread on a new iterator. `run()` distributes the source until
it is exhausted, then ends every recipient's iterator and waits for the
runners; `wait(timeout)` blocks until that has happened.

## Readings, cache and status

`Readings` holds a timestamp and one value per measurement; `add(snip)`
replaces the value and takes over the snip's timestamp, `clone()` copies it.
`MeterReadings` keeps the current `Readings` plus a history of copies:
`average(since)` averages each measurement over the history from `since` on,
`trim_before(timestamp)` drops old history, `purge()` clears everything and
`start_housekeeping()` trims in a background thread every `max_age`.

`Cache(max_age, status, verbose=False, housekeeping=True)` consumes snips with
`run(snips)`. `sorted_ids()` lists the known devices; `current(device)` and
`average(device)` (last minute) raise `DeviceNotFoundError` for unknown
devices and `DeviceUnavailableError` for devices the status reports offline;
`purge(device)` clears a device's data.

`Status(device_info)` records control snips (`record`, or `consume` for a
stream), answers `online(device)`, and on `to_dict()` / `to_json()` refreshes
and exports `StartTime`, `UpTime`, `Goroutines` (active thread count),
`Memory` and the per-device `Meters` with request and error rates per minute.
`DeviceInfo` maps device ids to `DeviceDescriptor`s (type, manufacturer,
model, sub device).

```python
from datetime import datetime, timedelta, timezone

from mbmd.cache import Cache
from mbmd.snips import ControlSnip, QuerySnip, RuntimeInfo
from mbmd.status import DeviceInfo, Status

status = Status(DeviceInfo())
status.record(ControlSnip("SDM1.1", RuntimeInfo(online=True)))

cache = Cache(timedelta(minutes=2), status, housekeeping=False)
cache.run([QuerySnip("SDM1.1", "PowerL1", 230.0, datetime.now(timezone.utc))])
print(cache.current("SDM1.1").values)  # {'PowerL1': 230.0}
```

## HTTP and WebSocket

`Httpd(device_info, cache, assets_dir="assets")` builds an aiohttp
application with `make_app(hub, status)` and serves it with
`run(hub, status, "host:port")`. The assets directory must contain
`index.html`; `{{ .SoftwareVersion }}` and `{{ .PythonVersion }}` in it are
filled in. Files below `css/` and `js/` are served as they are.

| Path               | Response                                              |
|--------------------|-------------------------------------------------------|
| `/`                | the rendered `index.html`                             |
| `/api/last`        | latest readings of all online devices                 |
| `/api/last/{id}`   | latest readings of one device                         |
| `/api/avg`         | readings averaged over the last minute, all devices   |
| `/api/avg/{id}`    | readings averaged over the last minute, one device    |
| `/api/status`      | daemon and device status                              |
| `/ws`              | WebSocket feed of snips and status                    |

API responses carry `Content-Type: application/json; charset=UTF-8` and
`Access-Control-Allow-Origin: *`. A single-device request for a device that
does not exist or is offline gets status 400 with the reason as body; the
all-devices endpoints answer 400 `all meters are inactive` when no device
has readings to show.

`SocketHub(status)` keeps the WebSocket clients. `run(snips)` broadcasts every
snip and, once a second, the status. A client whose buffer of 256 messages
is full is dropped.

## JSON output

Device readings are written with the timestamp first, then the Unix time,
then the measurements sorted by name. Floats always carry six decimals:

```python
from mbmd.apijson import kv_json

print(kv_json([("Power", 1.5), ("Import", 2)]))
# {"Power":1.500000,"Import":2}
```

`api_data_json(readings)` produces that shape for a whole `Readings`.

## MQTT and Homie

`MqttOptions` holds broker (default `tcp://localhost:1883`; `ssl://`,
`tls://` and `mqtts://` use TLS), user, password, client id, clean session and
last will. `MqttClient(options, qos, verbose)` connects and raises
`ConnectionError` if it cannot. Device ids become topics in lower case, with
`#` removed and `.` replaced by `-`:

```python
from mbmd.mqtt import device_topic, topic_from_measurement

device_topic("SDM1.1")             # "sdm1-1"
topic_from_measurement("PowerL1")  # "Power/L1"
```

`MqttRunner(options, qos, topic)` sets a retained last will `disconnected` on
`<topic>/status`, publishes `connected` there when `run(snips)` starts, and
publishes each value with three decimals to
`<topic>/<device>/<measurement>`.

`HomieRunner(device_info, options, qos, root_topic)` opens one MQTT client per
device, publishes the device, its `meter` node and one property per observed
measurement, clears stale retained topics, reflects online changes via
`handle_control(snip)` as `ready` / `alert`, and marks every device
`disconnected` when its input ends. Property units come from the optional
`units` mapping.

## InfluxDB

`Influx(url, database, measurement, org="", token="", user="", password="")`
raises `ValueError` without a database or measurement. With only a user, it
authenticates with `user:password`. Points are tagged with `device` and
`type`, carry a `value` field, and are posted to `/api/v2/write` in batches
(every 5000 points or each second). `run(snips)` writes everything and then
closes; `line_protocol(measurement, tags, fields, timestamp)` encodes a single
point.

## Testing

Install the package with its `test` extra and run `pytest`.