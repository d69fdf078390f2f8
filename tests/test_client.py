from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path
from typing import Any, AsyncIterator

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as _TestServer

from comfyuiclient.client import (
    ComfyUIClient,
    FetchError,
    PreconditionError,
    TransportError,
)
from comfyuiclient.models import FolderName, ImageRef
from comfyuiclient.wire import (
    ConnectionLostError,
    ExecutionError,
    ProtocolError,
    StreamEvent,
)

CLOSE = object()


def _executing(node: str | None, prompt_id: str) -> dict[str, Any]:
    return {"type": "executing", "data": {"node": node, "prompt_id": prompt_id}}


def _image(filename: str, subfolder: str = "", type: str = "output") -> dict[str, str]:
    return {"filename": filename, "subfolder": subfolder, "type": type}


def _record(outputs: dict[str, Any]) -> dict[str, Any]:
    return {
        "prompt": [0, "ignored", {}, {}, []],
        "outputs": outputs,
        "status": {"status_str": "success", "completed": True, "messages": []},
    }


class _FakeComfyServer:
    """In-process stand-in for the ComfyUI HTTP and WebSocket endpoints."""

    def __init__(
        self,
        *,
        prompt_ids: list[str] | None = None,
        scripts: list[list[Any]] | None = None,
        history: dict[str, Any] | None = None,
        images: dict[str, bytes] | None = None,
        failing_images: tuple[str, ...] = (),
        delays: dict[str, float] | None = None,
        prompt_error: dict[str, Any] | None = None,
        deferred: bool = False,
        ws_delay: float = 0.0,
    ) -> None:
        self.prompt_ids = list(prompt_ids or ["abc123"])
        self.scripts = list(scripts or [[]])
        self.history = history or {}
        self.images = dict(images or {})
        self.failing_images = set(failing_images)
        self.delays = dict(delays or {})
        self.prompt_error = prompt_error
        self.deferred = deferred
        self.ws_delay = ws_delay

        self.requests: list[tuple[str, str]] = []
        self.received_prompts: list[dict[str, Any]] = []
        self.view_requests: list[tuple[str, str, str]] = []
        self.history_edits: list[dict[str, Any]] = []
        self.uploads: list[dict[str, Any]] = []
        self.client_ids: list[str | None] = []
        self.sockets: list[web.WebSocketResponse] = []
        self._socket_ready = asyncio.Event()
        self._tasks: list[asyncio.Future[None]] = []

        @web.middleware
        async def record(request: web.Request, handler: Any) -> web.StreamResponse:
            self.requests.append((request.method, request.path))
            return await handler(request)

        app = web.Application(middlewares=[record])
        app.router.add_get("/ws", self._ws)
        app.router.add_post("/prompt", self._post_prompt)
        app.router.add_get("/prompt", self._json({"exec_info": {"queue_remaining": 0}}))
        app.router.add_get("/history", self._history_all)
        app.router.add_get("/history/{prompt_id}", self._history_one)
        app.router.add_post("/history", self._edit_history)
        app.router.add_get("/view", self._view)
        app.router.add_post("/upload/image", self._upload)
        app.router.add_post("/upload/mask", self._upload)
        app.router.add_get("/view_metadata/{folder}", self._view_metadata)
        app.router.add_post("/interrupt", self._interrupt)
        app.router.add_get("/embeddings", self._json(["easynegative"]))
        app.router.add_get("/extensions", self._json(["/extensions/core/widgets.js"]))
        app.router.add_get("/system_stats", self._json({"system": {"os": "posix"}, "devices": []}))
        app.router.add_get("/queue", self._json({"queue_running": [], "queue_pending": []}))
        app.router.add_get("/object_info", self._json({"KSampler": {}, "SaveImage": {}}))
        app.router.add_get("/object_info/{node_class}", self._object_info_one)
        self.server = _TestServer(app, host="127.0.0.1")

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.server.port}"

    async def __aenter__(self) -> "_FakeComfyServer":
        await self.server.start_server()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        for ws in self.sockets:
            await ws.close()
        await self.server.close()

    @staticmethod
    def _json(payload: Any) -> Any:
        async def handler(request: web.Request) -> web.Response:
            return web.json_response(payload)

        return handler

    async def _ws(self, request: web.Request) -> web.WebSocketResponse:
        if self.ws_delay:
            await asyncio.sleep(self.ws_delay)
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.client_ids.append(request.query.get("clientId"))
        self.sockets.append(ws)
        self._socket_ready.set()
        async for _message in ws:
            pass
        return ws

    async def play(self, frames: list[Any]) -> None:
        if not frames:
            return
        await self._socket_ready.wait()
        ws = self.sockets[-1]
        for frame in frames:
            if frame is CLOSE:
                await ws.close()
                return
            if isinstance(frame, bytes):
                await ws.send_bytes(frame)
            elif isinstance(frame, str):
                await ws.send_str(frame)
            else:
                await ws.send_json(frame)

    async def _play_later(self, frames: list[Any]) -> None:
        await asyncio.sleep(0.05)
        await self.play(frames)

    async def _post_prompt(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.received_prompts.append(body)
        if self.prompt_error is not None:
            return web.json_response(self.prompt_error, status=400)

        prompt_id = self.prompt_ids.pop(0)
        frames = self.scripts.pop(0) if self.scripts else []
        if self.deferred:
            self._tasks.append(asyncio.ensure_future(self._play_later(frames)))
        else:
            await self.play(frames)
        return web.json_response(
            {"prompt_id": prompt_id, "number": len(self.received_prompts), "node_errors": {}}
        )

    async def _history_all(self, request: web.Request) -> web.Response:
        return web.json_response(self.history)

    async def _history_one(self, request: web.Request) -> web.Response:
        prompt_id = request.match_info["prompt_id"]
        if prompt_id in self.history:
            return web.json_response({prompt_id: self.history[prompt_id]})
        return web.json_response({})

    async def _edit_history(self, request: web.Request) -> web.Response:
        self.history_edits.append(await request.json())
        return web.Response(status=200)

    async def _view(self, request: web.Request) -> web.Response:
        filename = request.query.get("filename", "")
        self.view_requests.append(
            (filename, request.query.get("subfolder", ""), request.query.get("type", ""))
        )
        await asyncio.sleep(self.delays.get(filename, 0.0))
        if filename in self.failing_images:
            return web.json_response({"error": "disk failure"}, status=500)
        data = self.images.get(filename)
        if data is None:
            raise web.HTTPNotFound()
        return web.Response(body=data, content_type="image/png")

    async def _upload(self, request: web.Request) -> web.Response:
        post = await request.post()
        image = post["image"]
        self.uploads.append(
            {
                "path": request.path,
                "filename": image.filename,
                "content": image.file.read(),
                "overwrite": post.get("overwrite"),
                "original_ref": post.get("original_ref"),
            }
        )
        return web.json_response({"name": image.filename, "subfolder": "", "type": "input"})

    async def _view_metadata(self, request: web.Request) -> web.Response:
        if request.query.get("filename") != "model.safetensors":
            return web.json_response({"error": "file not found"}, status=404)
        return web.json_response({"ss_network_dim": "32"})

    async def _interrupt(self, request: web.Request) -> web.Response:
        return web.Response(status=200)

    async def _object_info_one(self, request: web.Request) -> web.Response:
        node_class = request.match_info["node_class"]
        return web.json_response({node_class: {"input": {"required": {}}}})


def _make_client(server: _FakeComfyServer, **kwargs: Any) -> ComfyUIClient:
    return ComfyUIClient(
        server.address,
        "test-client",
        use_https=False,
        use_wss=False,
        config_path="",
        **kwargs,
    )


@contextlib.asynccontextmanager
async def _connected(server: _FakeComfyServer, **kwargs: Any) -> AsyncIterator[ComfyUIClient]:
    client = _make_client(server, **kwargs)
    try:
        await client.connect(timeout=5.0)
        yield client
    finally:
        await client.close()


def test_get_images_resolves_on_matching_completion() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(
            scripts=[
                [
                    b"\x00\x00\x00\x01preview",
                    {"type": "status", "data": {"status": {"exec_info": {"queue_remaining": 1}}}},
                    _executing(None, "someone-else"),
                    _executing("3", "abc123"),
                    _executing(None, "abc123"),
                ]
            ],
            history={
                "abc123": _record(
                    {
                        "9": {"images": [_image("a.png"), _image("b.png")]},
                        "12": {"text": ["caption"]},
                    }
                )
            },
            images={"a.png": b"AAAA", "b.png": b"BB"},
        )
        async with server:
            async with _connected(server) as client:
                result = await asyncio.wait_for(client.get_images({}), 5.0)

                assert list(result) == ["9"]
                assert [item.image.filename for item in result["9"]] == ["a.png", "b.png"]
                assert [item.data for item in result["9"]] == [b"AAAA", b"BB"]
                assert result["9"][0].image == ImageRef("a.png", "", "output")
                assert client._events is not None
                assert client._events.registry.active == 0

            assert server.client_ids == ["test-client"]
            assert server.received_prompts == [{"prompt": {}, "client_id": "test-client"}]
            assert server.requests.count(("GET", "/history/abc123")) == 1
            assert server.view_requests == [("a.png", "", "output"), ("b.png", "", "output")]

    asyncio.run(scenario())


def test_get_images_handles_events_arriving_after_submission_response() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(
            scripts=[[_executing("3", "abc123"), _executing(None, "abc123")]],
            history={"abc123": _record({"9": {"images": [_image("a.png", "batch")]}})},
            images={"a.png": b"A"},
            deferred=True,
        )
        async with server:
            async with _connected(server) as client:
                result = await asyncio.wait_for(client.get_images({"1": {}}), 5.0)
        assert [item.image.subfolder for item in result["9"]] == ["batch"]
        assert server.view_requests == [("a.png", "batch", "output")]

    asyncio.run(scenario())


def test_get_images_keeps_history_order_when_fetches_finish_out_of_order() -> None:
    async def scenario() -> None:
        names = [f"img_{index}.png" for index in range(6)]
        server = _FakeComfyServer(
            scripts=[[_executing(None, "abc123")]],
            history={
                "abc123": _record(
                    {
                        "9": {"images": [_image(name) for name in names[:4]]},
                        "11": {"images": [_image(name, type="temp") for name in names[4:]]},
                        "13": {"images": []},
                    }
                )
            },
            images={name: name.encode("utf-8") for name in names},
            delays={name: 0.05 * (len(names) - index) for index, name in enumerate(names)},
        )
        async with server:
            async with _connected(server, max_concurrent_fetches=3) as client:
                result = await asyncio.wait_for(client.get_images({}), 10.0)

        assert list(result) == ["9", "11", "13"]
        assert [item.image.filename for item in result["9"]] == names[:4]
        assert [item.data for item in result["11"]] == [name.encode("utf-8") for name in names[4:]]
        assert [item.image.type for item in result["11"]] == ["temp", "temp"]
        assert result["13"] == []

    asyncio.run(scenario())


def test_get_images_fetch_failure_discards_partial_results() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(
            scripts=[[_executing(None, "abc123")]],
            history={"abc123": _record({"9": {"images": [_image("a.png"), _image("b.png")]}})},
            images={"a.png": b"A"},
            failing_images=("b.png",),
        )
        async with server:
            async with _connected(server) as client:
                with pytest.raises(FetchError, match="b.png") as excinfo:
                    await asyncio.wait_for(client.get_images({}), 5.0)

        assert excinfo.value.ref == ImageRef("b.png", "", "output")
        assert isinstance(excinfo.value.__cause__, TransportError)
        assert excinfo.value.__cause__.status == 500

    asyncio.run(scenario())


def test_get_images_missing_history_record_raises_fetch_error() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(scripts=[[_executing(None, "abc123")]])
        async with server:
            async with _connected(server) as client:
                with pytest.raises(FetchError, match="history record"):
                    await asyncio.wait_for(client.get_images({}), 5.0)

    asyncio.run(scenario())


def test_get_images_malformed_history_raises_protocol_error() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(
            scripts=[[_executing(None, "abc123")]],
            history={"abc123": _record({"9": {"images": [{"subfolder": ""}]}})},
        )
        async with server:
            async with _connected(server) as client:
                with pytest.raises(ProtocolError, match="filename"):
                    await asyncio.wait_for(client.get_images({}), 5.0)

    asyncio.run(scenario())


def test_malformed_frame_fails_tracking_and_connection_stays_usable() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(
            prompt_ids=["first", "second"],
            scripts=[
                ["this is not json"],
                [_executing("4", "second"), _executing(None, "second")],
            ],
            history={"second": _record({"9": {"images": [_image("a.png")]}})},
            images={"a.png": b"A"},
        )
        async with server:
            async with _connected(server) as client:
                with pytest.raises(ProtocolError):
                    await asyncio.wait_for(client.get_images({}), 5.0)
                assert client.connected

                result = await asyncio.wait_for(client.get_images({}), 5.0)
                assert [item.data for item in result["9"]] == [b"A"]

        assert server.client_ids == ["test-client"]
        assert ("GET", "/history/first") not in server.requests

    asyncio.run(scenario())


def test_connection_closed_before_completion_raises_connection_lost() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(scripts=[[_executing("3", "abc123"), CLOSE]])
        async with server:
            async with _connected(server) as client:
                with pytest.raises(ConnectionLostError, match="closed by server"):
                    await asyncio.wait_for(client.get_images({}), 5.0)
                assert not client.connected

                with pytest.raises(PreconditionError):
                    await client.get_images({})

        assert len(server.received_prompts) == 1

    asyncio.run(scenario())


def test_disconnect_while_tracking_raises_connection_lost() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(scripts=[[_executing("3", "abc123")]])
        async with server:
            async with _connected(server) as client:
                task = asyncio.ensure_future(client.get_images({}))
                while not server.received_prompts:
                    await asyncio.sleep(0.01)
                await asyncio.sleep(0.05)
                await client.disconnect()
                with pytest.raises(ConnectionLostError) as excinfo:
                    await asyncio.wait_for(task, 5.0)
        assert str(excinfo.value) == "event connection closed"

    asyncio.run(scenario())


def test_queue_prompt_does_not_need_event_connection() -> None:
    async def scenario() -> None:
        async with _FakeComfyServer(prompt_ids=["p1"]) as server:
            client = _make_client(server, request_timeout=5.0)
            try:
                queued = await asyncio.wait_for(client.queue_prompt({"1": {}}), 5.0)
            finally:
                await client.close()
        assert queued.prompt_id == "p1"
        assert server.client_ids == []

    asyncio.run(scenario())


def test_get_images_requires_connection() -> None:
    async def scenario() -> None:
        async with _FakeComfyServer() as server:
            client = _make_client(server)
            try:
                with pytest.raises(PreconditionError, match="connect"):
                    await client.get_images({})
            finally:
                await client.close()
        assert server.received_prompts == []

    asyncio.run(scenario())


def test_submission_failure_surfaces_server_payload() -> None:
    error_payload = {
        "error": {
            "type": "prompt_outputs_failed_validation",
            "message": "Prompt outputs failed validation",
        },
        "node_errors": {},
    }

    async def scenario() -> None:
        server = _FakeComfyServer(prompt_error=error_payload)
        async with server:
            async with _connected(server) as client:
                with pytest.raises(TransportError, match="prompt_outputs_failed_validation") as excinfo:
                    await client.get_images({"1": {"class_type": "Missing"}})
                assert client._events is not None
                assert client._events.registry.active == 0

        assert excinfo.value.status == 400
        assert excinfo.value.payload == error_payload

    asyncio.run(scenario())


def test_execution_error_event_fails_tracking() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(
            scripts=[
                [
                    _executing("3", "abc123"),
                    {
                        "type": "execution_error",
                        "data": {
                            "prompt_id": "abc123",
                            "node_id": "3",
                            "node_type": "KSampler",
                            "exception_message": "CUDA out of memory",
                        },
                    },
                ]
            ]
        )
        async with server:
            async with _connected(server) as client:
                with pytest.raises(ExecutionError, match="CUDA out of memory"):
                    await asyncio.wait_for(client.get_images({}), 5.0)

        assert ("GET", "/history/abc123") not in server.requests

    asyncio.run(scenario())


def test_event_callback_sees_only_tracked_prompt() -> None:
    async def scenario() -> None:
        seen: list[tuple[str, str | None]] = []

        def on_event(event: StreamEvent) -> None:
            seen.append((event.kind, event.prompt_id))

        server = _FakeComfyServer(
            scripts=[
                [
                    _executing("7", "other"),
                    _executing("3", "abc123"),
                    {"type": "progress", "data": {"value": 5, "max": 20, "prompt_id": "abc123"}},
                    _executing(None, "other"),
                    _executing(None, "abc123"),
                ]
            ],
            history={"abc123": _record({})},
        )
        async with server:
            async with _connected(server) as client:
                result = await asyncio.wait_for(client.get_images({}, on_event=on_event), 5.0)

        assert result == {}
        assert seen == [
            ("executing", "abc123"),
            ("progress", "abc123"),
            ("executing", "abc123"),
        ]

    asyncio.run(scenario())


def test_connect_timeout_calls_on_timeout() -> None:
    async def scenario() -> None:
        calls: list[str] = []
        async with _FakeComfyServer(ws_delay=0.5) as server:
            client = _make_client(server)
            try:
                with pytest.raises(TransportError, match="^connection timeout$"):
                    await client.connect(timeout=0.05, on_timeout=lambda: calls.append("timeout"))
                assert not client.connected
            finally:
                await client.close()
            await asyncio.sleep(0.6)
        assert calls == ["timeout"]

    asyncio.run(scenario())


def test_connect_twice_replaces_event_connection() -> None:
    async def scenario() -> None:
        async with _FakeComfyServer() as server:
            async with _connected(server) as client:
                first = client._events
                await client.connect(timeout=5.0)
                assert client.connected
                assert client._events is not first
                assert first is not None and not first.connected
        assert server.client_ids == ["test-client", "test-client"]

    asyncio.run(scenario())


def test_pass_through_endpoints() -> None:
    async def scenario() -> None:
        server = _FakeComfyServer(history={"abc123": _record({})})
        async with server:
            client = _make_client(server)
            try:
                assert await client.get_embeddings() == ["easynegative"]
                assert await client.get_extensions() == ["/extensions/core/widgets.js"]
                assert (await client.get_system_stats())["system"]["os"] == "posix"
                assert await client.get_queue() == {"queue_running": [], "queue_pending": []}
                assert (await client.get_prompt())["exec_info"]["queue_remaining"] == 0
                assert set(await client.get_object_info()) == {"KSampler", "SaveImage"}
                assert list(await client.get_object_info("KSampler")) == ["KSampler"]
                assert list(await client.get_history()) == ["abc123"]
                assert await client.get_history("missing") == {}
                await client.interrupt()
                await client.edit_history(delete=["abc123"])
                await client.edit_history(clear=True)
                queued = await client.queue_prompt({"1": {"class_type": "SaveImage"}})
            finally:
                await client.close()

        assert queued.prompt_id == "abc123"
        assert queued.number == 1
        assert server.history_edits == [{"delete": ["abc123"]}, {"clear": True}]
        assert ("POST", "/interrupt") in server.requests
        assert ("GET", "/object_info/KSampler") in server.requests

    asyncio.run(scenario())


def test_upload_image_and_mask_send_multipart_fields() -> None:
    async def scenario() -> None:
        async with _FakeComfyServer() as server:
            client = _make_client(server)
            try:
                uploaded = await client.upload_image(b"PNGDATA", "photo.png", overwrite=True)
                masked = await client.upload_mask(
                    b"MASK", "mask.png", ImageRef("photo.png", "", "input")
                )
            finally:
                await client.close()

        assert uploaded.name == "photo.png"
        assert masked.as_ref() == ImageRef("mask.png", "", "input")
        first, second = server.uploads
        assert first["path"] == "/upload/image"
        assert first["content"] == b"PNGDATA"
        assert first["overwrite"] == "true"
        assert first["original_ref"] is None
        assert second["path"] == "/upload/mask"
        assert second["overwrite"] is None
        assert json.loads(second["original_ref"]) == {
            "filename": "photo.png",
            "subfolder": "",
            "type": "input",
        }

    asyncio.run(scenario())


def test_view_metadata_and_server_error_payload() -> None:
    async def scenario() -> None:
        async with _FakeComfyServer() as server:
            client = _make_client(server)
            try:
                metadata = await client.view_metadata(FolderName.LORAS, "model.safetensors")
                with pytest.raises(TransportError) as excinfo:
                    await client.view_metadata("loras", "absent.safetensors")
            finally:
                await client.close()

        assert metadata == {"ss_network_dim": "32"}
        assert excinfo.value.status == 404
        assert excinfo.value.payload == {"error": "file not found"}
        assert '{"error": "file not found"}' in str(excinfo.value)
        assert ("GET", "/view_metadata/loras") in server.requests

    asyncio.run(scenario())


def test_unreachable_server_raises_transport_error() -> None:
    async def scenario() -> None:
        async with _FakeComfyServer() as server:
            address = server.address
        client = ComfyUIClient(address, config_path="", use_https=False, use_wss=False)
        try:
            with pytest.raises(TransportError):
                await client.get_queue()
            with pytest.raises(TransportError):
                await client.connect(timeout=2.0)
        finally:
            await client.close()

    asyncio.run(scenario())


def test_save_images_writes_artifacts(tmp_path: Path) -> None:
    async def scenario() -> list[Path]:
        server = _FakeComfyServer(
            scripts=[[_executing(None, "abc123")]],
            history={"abc123": _record({"9": {"images": [_image("a.png", "sub")]}})},
            images={"a.png": b"A"},
        )
        async with server:
            async with _connected(server) as client:
                result = await client.get_images({})
                return await client.save_images(result, tmp_path / "out")

    paths = asyncio.run(scenario())
    assert paths == [tmp_path / "out" / "a.png"]
    assert paths[0].read_bytes() == b"A"


def test_client_defaults_generate_client_id() -> None:
    client = ComfyUIClient("localhost:8188", config_path="", use_https=False, use_wss=False)
    other = ComfyUIClient("localhost:8188", config_path="", use_https=False, use_wss=False)
    assert client.client_id != other.client_id
    assert len(client.client_id) == 32
    assert client.endpoint.ws_url(client.client_id).startswith("ws://localhost:8188/ws?clientId=")
