import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from aiohttp.test_utils import TestClient, TestServer

from mbmd.cache import Cache
from mbmd.httpd import VERSION, Httpd, SocketHub
from mbmd.snips import ControlSnip, QuerySnip, RuntimeInfo
from mbmd.status import DeviceInfo, Status


@pytest.fixture
def assets(tmp_path):
    (tmp_path / "index.html").write_text("<p>{{.SoftwareVersion}}</p>", encoding="utf-8")
    (tmp_path / "css").mkdir()
    (tmp_path / "css" / "style.css").write_text("body{}", encoding="utf-8")
    return tmp_path


@pytest.fixture
def status():
    return Status(DeviceInfo())


@pytest.fixture
def cache(status):
    return Cache(timedelta(minutes=5), status, housekeeping=False)


def _snip(device, measurement, value):
    return QuerySnip(
        device=device,
        measurement=measurement,
        value=value,
        timestamp=datetime.now(timezone.utc),
    )


def _online(status, device, online=True):
    status.record(ControlSnip(device, RuntimeInfo(online=online)))


def _client(assets, cache, status):
    httpd = Httpd(DeviceInfo(), cache, assets)
    hub = SocketHub(status, status_frequency=3600)
    return TestClient(TestServer(httpd.make_app(hub, status))), hub


class _FakeWs:
    pass


@pytest.mark.asyncio
async def test_index_renders_version(assets, cache, status):
    client, _ = _client(assets, cache, status)
    async with client:
        resp = await client.get("/")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/html")
        assert VERSION in await resp.text()


@pytest.mark.asyncio
async def test_static_file_and_missing(assets, cache, status):
    client, _ = _client(assets, cache, status)
    async with client:
        resp = await client.get("/css/style.css")
        assert resp.status == 200
        assert await resp.text() == "body{}"
        missing = await client.get("/css/none.css")
        assert missing.status == 404


def test_make_app_requires_template(tmp_path, cache, status):
    httpd = Httpd(DeviceInfo(), cache, tmp_path)
    with pytest.raises(FileNotFoundError):
        httpd.make_app(SocketHub(status), status)


@pytest.mark.asyncio
async def test_all_inactive(assets, cache, status):
    client, _ = _client(assets, cache, status)
    async with client:
        resp = await client.get("/api/last")
        assert resp.status == 400
        assert await resp.text() == "all meters are inactive"
        assert resp.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_last_all_and_single(assets, cache, status):
    snip = _snip("dev1", "VoltageL1", 220.0)
    cache.run([snip])
    _online(status, "dev1")
    client, _ = _client(assets, cache, status)
    async with client:
        resp = await client.get("/api/last")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("application/json")
        data = json.loads(await resp.text())
        assert list(data) == ["dev1"]
        assert data["dev1"]["VoltageL1"] == 220.0
        assert data["dev1"]["Unix"] == int(snip.timestamp.timestamp())

        single = json.loads(await (await client.get("/api/last/dev1")).text())
        assert single == data["dev1"]


@pytest.mark.asyncio
async def test_unknown_and_offline_devices(assets, cache, status):
    cache.run([_snip("dev1", "VoltageL1", 220.0), _snip("dev2", "VoltageL1", 230.0)])
    _online(status, "dev1")
    _online(status, "dev2", online=False)
    client, _ = _client(assets, cache, status)
    async with client:
        unknown = await client.get("/api/last/nope")
        assert unknown.status == 400
        assert await unknown.text() == "device nope does not exist"

        offline = await client.get("/api/last/dev2")
        assert offline.status == 400
        assert await offline.text() == "device dev2 is not available"

        data = json.loads(await (await client.get("/api/last")).text())
        assert list(data) == ["dev1"]


@pytest.mark.asyncio
async def test_average(assets, cache, status):
    cache.run([_snip("dev1", "PowerL1", 220.0), _snip("dev1", "PowerL1", 230.0)])
    _online(status, "dev1")
    client, _ = _client(assets, cache, status)
    async with client:
        single = json.loads(await (await client.get("/api/avg/dev1")).text())
        assert single["PowerL1"] == 225.0
        every = json.loads(await (await client.get("/api/avg")).text())
        assert every["dev1"] == single


@pytest.mark.asyncio
async def test_status_endpoint(assets, cache, status):
    _online(status, "dev1")
    client, _ = _client(assets, cache, status)
    async with client:
        resp = await client.get("/api/status")
        assert resp.status == 200
        data = json.loads(await resp.text())
        assert [m["Device"] for m in data["Meters"]] == ["dev1"]
        assert data["Meters"][0]["Online"] is True


@pytest.mark.asyncio
async def test_websocket_receives_broadcast(assets, cache, status):
    client, hub = _client(assets, cache, status)
    snip = _snip("dev1", "VoltageL1", 220.0)
    async with client:
        ws = await client.ws_connect("/ws")
        for _ in range(100):
            if len(hub):
                break
            await asyncio.sleep(0.01)
        assert len(hub) == 1
        hub.broadcast(snip)
        message = await asyncio.wait_for(ws.receive_str(), 5)
        assert json.loads(message) == snip.to_dict()
        await ws.close()
        for _ in range(100):
            if not len(hub):
                break
            await asyncio.sleep(0.01)
        assert len(hub) == 0


@pytest.mark.asyncio
async def test_run_queues_snips(status):
    hub = SocketHub(status, status_frequency=3600)
    client = hub.register(_FakeWs())
    snip = _snip("dev1", "Frequency", 50.0)
    hub.run([snip])
    assert json.loads(client.send.get_nowait()) == snip.to_dict()


@pytest.mark.asyncio
async def test_lagging_client_dropped(status):
    hub = SocketHub(status, queue_size=1)
    hub.register(_FakeWs())
    hub.broadcast({"a": 1})
    assert len(hub) == 1
    hub.broadcast({"a": 2})
    assert len(hub) == 0


@pytest.mark.asyncio
async def test_unregister(status):
    hub = SocketHub(status)
    ws = _FakeWs()
    hub.register(ws)
    hub.unregister(ws)
    assert len(hub) == 0
    hub.unregister(ws)
    assert len(hub) == 0