"""HTTP API, web UI and websocket distribution of meter readings."""

from __future__ import annotations

import asyncio
import html
import json
import logging
import platform
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from aiohttp import web

from .apijson import api_data_json
from .cache import Cache, DeviceNotFoundError, DeviceUnavailableError
from .readings import Readings
from .snips import QuerySnip
from .status import DeviceInfo, Status

log = logging.getLogger(__name__)

VERSION = "unknown version"
COMMIT = "unknown commit"

# Assets directory relative to the working directory.
ASSETS_DIR = "assets"

# Seconds allowed to write a message to a websocket peer.
SOCKET_WRITE_WAIT = 10.0
# Seconds between status pushes to websocket clients.
STATUS_FREQUENCY = 1.0
# Outbound messages buffered per websocket client.
SEND_BUFFER = 256

_ID_PATTERN = "[a-zA-Z0-9.]+"
_PLACEHOLDER = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")
_CLOSED = object()

ReadingsProvider = Callable[[str], Readings]


@dataclass(eq=False)
class SocketClient:
    """A websocket connection with its buffered outbound messages."""

    ws: Any
    loop: asyncio.AbstractEventLoop
    send: asyncio.Queue = field(default_factory=asyncio.Queue)


class SocketHub:
    """Maintains websocket clients and broadcasts results and status to them."""

    def __init__(
        self,
        status: Status,
        status_frequency: float = STATUS_FREQUENCY,
        queue_size: int = SEND_BUFFER,
    ) -> None:
        self.status = status
        self.status_frequency = status_frequency
        self.queue_size = queue_size
        self._clients: dict[Any, SocketClient] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def register(self, ws: Any) -> SocketClient:
        """Register a websocket; must be called from its event loop."""
        client = SocketClient(
            ws=ws,
            loop=asyncio.get_running_loop(),
            send=asyncio.Queue(maxsize=self.queue_size),
        )
        with self._lock:
            self._clients[ws] = client
        return client

    def unregister(self, ws: Any) -> None:
        """Remove a websocket and end its outbound stream."""
        with self._lock:
            client = self._clients.pop(ws, None)
        if client is not None:
            self._on_loop(client, self._close, client)

    @staticmethod
    def _on_loop(client: SocketClient, func: Callable[..., None], *args: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is client.loop:
            func(*args)
        else:
            client.loop.call_soon_threadsafe(func, *args)

    @staticmethod
    def _close(client: SocketClient) -> None:
        while not client.send.empty():
            client.send.get_nowait()
        client.send.put_nowait(_CLOSED)

    def _offer(self, client: SocketClient, message: str) -> None:
        with self._lock:
            if self._clients.get(client.ws) is not client:
                return
        try:
            client.send.put_nowait(message)
        except asyncio.QueueFull:
            with self._lock:
                self._clients.pop(client.ws, None)
            self._close(client)

    def broadcast(self, obj: Any) -> None:
        """Encode ``obj`` as JSON and queue it for every client; drop clients that lag."""
        with self._lock:
            clients = list(self._clients.values())
        if not clients:
            return
        to_json = getattr(obj, "to_json", None)
        message = to_json() if callable(to_json) else json.dumps(obj)
        for client in clients:
            self._on_loop(client, self._offer, client, message)

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Broadcast every snip and, periodically, the status until the source ends."""
        stop = threading.Event()

        def push_status() -> None:
            while not stop.wait(self.status_frequency):
                self.broadcast(self.status)

        pusher = threading.Thread(target=push_status, name="status-push", daemon=True)
        pusher.start()
        try:
            for snip in snips:
                self.broadcast(snip)
        finally:
            stop.set()

    async def pump(self, client: SocketClient) -> None:
        """Write queued messages to the client's websocket until it is closed."""
        try:
            while (message := await client.send.get()) is not _CLOSED:
                await asyncio.wait_for(client.ws.send_str(message), SOCKET_WRITE_WAIT)
        except (ConnectionError, asyncio.TimeoutError, RuntimeError):
            pass
        finally:
            await client.ws.close()


def _render(template: str, data: dict[str, str]) -> str:
    return _PLACEHOLDER.sub(lambda m: html.escape(data.get(m.group(1), "")), template)


def _split_address(url: str) -> tuple[str | None, int]:
    host, _, port = url.rpartition(":")
    return (host or None), int(port)


class Httpd:
    """HTTP server for the web UI, the JSON API and websocket clients."""

    def __init__(
        self,
        device_info: DeviceInfo,
        cache: Cache,
        assets_dir: str | Path = ASSETS_DIR,
    ) -> None:
        self.device_info = device_info
        self.cache = cache
        self.assets_dir = Path(assets_dir)

    def _index_handler(self) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        template = (self.assets_dir / "index.html").read_text(encoding="utf-8")
        data = {
            "SoftwareVersion": VERSION,
            "PythonVersion": platform.python_version(),
        }

        async def index(_request: web.Request) -> web.StreamResponse:
            return web.Response(
                text=_render(template, data), content_type="text/html", charset="utf-8"
            )

        return index

    def _static_handler(self) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        root = self.assets_dir.resolve()

        async def static(request: web.Request) -> web.StreamResponse:
            target = (root / request.path.lstrip("/")).resolve()
            try:
                target.relative_to(root)
            except ValueError:
                raise web.HTTPNotFound() from None
            if not target.is_file():
                raise web.HTTPNotFound()
            return web.FileResponse(target)

        return static

    def _all_devices_handler(
        self, provider: ReadingsProvider
    ) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        async def all_devices(_request: web.Request) -> web.StreamResponse:
            members = []
            for device in self.cache.sorted_ids():
                try:
                    readings = provider(device)
                except (DeviceNotFoundError, DeviceUnavailableError):
                    continue
                members.append(f"{json.dumps(device)}:{api_data_json(readings)}")
            if not members:
                return web.Response(status=400, text="all meters are inactive")
            return web.Response(text="{" + ",".join(members) + "}\n")

        return all_devices

    @staticmethod
    def _single_device_handler(
        provider: ReadingsProvider,
    ) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        async def single_device(request: web.Request) -> web.StreamResponse:
            device = request.match_info.get("id")
            if device is None:
                return web.Response(status=400)
            try:
                readings = provider(device)
            except (DeviceNotFoundError, DeviceUnavailableError) as err:
                return web.Response(status=400, text=str(err))
            return web.Response(text=api_data_json(readings) + "\n")

        return single_device

    @staticmethod
    def _status_handler(status: Status) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        async def status_handler(_request: web.Request) -> web.StreamResponse:
            return web.Response(text=status.to_json() + "\n")

        return status_handler

    @staticmethod
    def _socket_handler(hub: SocketHub) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        async def socket(request: web.Request) -> web.StreamResponse:
            ws = web.WebSocketResponse()
            await ws.prepare(request)
            client = hub.register(ws)
            writer = asyncio.create_task(hub.pump(client))
            try:
                async for _message in ws:
                    pass
            finally:
                hub.unregister(ws)
                await writer
            return ws

        return socket

    @staticmethod
    @web.middleware
    async def _decorate(
        request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
    ) -> web.StreamResponse:
        response = await handler(request)
        if request.path.startswith("/api"):
            response.headers["Content-Type"] = "application/json; charset=UTF-8"
            response.headers["Access-Control-Allow-Origin"] = "*"
        if isinstance(response, web.Response) and request.path != "/ws":
            response.enable_compression()
        return response

    def make_app(self, hub: SocketHub, status: Status) -> web.Application:
        """Build the web application; fails if the index template is missing."""
        app = web.Application(
            middlewares=[
                web.normalize_path_middleware(append_slash=False, remove_slash=True),
                self._decorate,
            ]
        )
        router = app.router

        router.add_get("/", self._index_handler())
        static = self._static_handler()
        for directory in ("css", "js"):
            router.add_get(f"/{directory}/{{path:.*}}", static)

        router.add_get("/api/last", self._all_devices_handler(self.cache.current))
        router.add_get(f"/api/last/{{id:{_ID_PATTERN}}}", self._single_device_handler(self.cache.current))
        router.add_get("/api/avg", self._all_devices_handler(self.cache.average))
        router.add_get(f"/api/avg/{{id:{_ID_PATTERN}}}", self._single_device_handler(self.cache.average))
        router.add_get("/api/status", self._status_handler(status))

        router.add_get("/ws", self._socket_handler(hub))
        return app

    def run(self, hub: SocketHub, status: Status, url: str) -> None:
        """Serve the application at ``host:port`` until interrupted."""
        log.info("httpd: starting api at %s", url)
        host, port = _split_address(url)
        web.run_app(
            self.make_app(hub, status),
            host=host,
            port=port,
            keepalive_timeout=120,
            print=None,
        )