from __future__ import annotations

"""High-level ComfyUI client implementation.

This module contains:
- the HTTP request channel and its error mapping
- the tracking operation behind `ComfyUIClient.get_images` (submit, wait for
  the prompt to execute, fetch every produced image)
- thin wrappers for the remaining REST endpoints
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import aiohttp

from .builder import RequestBuilder
from .config import DEFAULT_CONFIG_PATH, load_client_config
from .models import (
    FolderName,
    ImageContainer,
    ImageRef,
    ImagesResponse,
    Prompt,
    QueuePromptResult,
    UploadImageResult,
)
from .utils import write_images
from .wire import (
    NULL_LOGGER,
    ComfyUIError,
    EventConnection,
    LoggerLike,
    NodeExecuting,
    ProtocolError,
    StreamEvent,
    parse_server_address,
)


class TransportError(ComfyUIError):
    """Raised when a request cannot be delivered or the server rejects it."""

    def __init__(
        self, message: str, *, status: int | None = None, payload: Any = None
    ) -> None:
        if payload is not None:
            message = f"{message}: {_format_payload(payload)}"
        super().__init__(message)
        self.status = status
        self.payload = payload


class FetchError(ComfyUIError):
    """Raised when an image of a completed prompt cannot be downloaded."""

    def __init__(self, message: str, ref: ImageRef | None = None) -> None:
        super().__init__(message)
        self.ref = ref


class PreconditionError(ComfyUIError):
    """Raised when tracking is attempted without an open event connection."""


def _format_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, sort_keys=True)
    except (TypeError, ValueError):
        return repr(payload)


async def _read_error_payload(resp: aiohttp.ClientResponse) -> Any:
    """Return the server's error body: decoded JSON when possible, else text."""
    text = await resp.text(errors="replace")
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def _output_refs(record: Any) -> list[tuple[str, list[ImageRef]]]:
    """List image references per output node, in history order."""
    if not isinstance(record, Mapping):
        raise ProtocolError(f"history record is not an object: {record!r}")
    outputs = record.get("outputs") or {}
    if not isinstance(outputs, Mapping):
        raise ProtocolError(f"history outputs is not an object: {outputs!r}")

    planned: list[tuple[str, list[ImageRef]]] = []
    for node_id, node_output in outputs.items():
        if not isinstance(node_output, Mapping):
            continue
        images = node_output.get("images")
        if not isinstance(images, list):
            continue
        planned.append((str(node_id), [ImageRef.from_dict(item) for item in images]))
    return planned


def _describe_ref(ref: ImageRef) -> str:
    parts = [ref.type, ref.subfolder, ref.filename]
    return "/".join(part for part in parts if part)


# ---------------------------------------------------------------------------
# Main public client API.
# ---------------------------------------------------------------------------
class ComfyUIClient:
    """Async client for the ComfyUI HTTP and WebSocket API."""

    def __init__(
        self,
        server_address: str | None = None,
        client_id: str | None = None,
        *,
        use_https: bool | None = None,
        use_wss: bool | None = None,
        config_path: str = DEFAULT_CONFIG_PATH,
        connect_timeout: float | None = None,
        request_timeout: float | None = None,
        max_concurrent_fetches: int | None = None,
        heartbeat: float | None = None,
        logger: LoggerLike | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize a client with optional overrides of the config file.

        - `server_address` is `host:port` or an http(s)/ws(s) URL.
        - `client_id` identifies this client on the event stream; a random
          hex token is used when omitted.
        - `logger` receives connection and tracking diagnostics; nothing is
          logged when it is omitted.
        - `session` lets callers share an `aiohttp.ClientSession`; the client
          only closes sessions it created.
        """
        cfg = load_client_config(config_path)
        self.server_address = (
            server_address if server_address is not None else cfg.server_address
        )
        self.client_id = client_id or uuid.uuid4().hex
        self.use_https = cfg.use_https if use_https is None else use_https
        self.use_wss = cfg.use_wss if use_wss is None else use_wss
        self.connect_timeout = (
            cfg.connect_timeout if connect_timeout is None else connect_timeout
        )
        self.request_timeout = (
            cfg.request_timeout if request_timeout is None else request_timeout
        )
        self.max_concurrent_fetches = max(
            1,
            cfg.max_concurrent_fetches
            if max_concurrent_fetches is None
            else max_concurrent_fetches,
        )
        self.heartbeat = cfg.heartbeat if heartbeat is None else heartbeat
        self.endpoint = parse_server_address(
            self.server_address, use_https=self.use_https, use_wss=self.use_wss
        )
        self.logger: LoggerLike = logger if logger is not None else NULL_LOGGER

        self._session = session
        self._owns_session = session is None
        self._events: EventConnection | None = None

    async def __aenter__(self) -> "ComfyUIClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- session & connection management -------------------------------------

    @property
    def connected(self) -> bool:
        return self._events is not None and self._events.connected

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def connect(
        self,
        timeout: float | None = None,
        on_timeout: Callable[[], None] | None = None,
    ) -> None:
        """Open the event connection, replacing any existing one.

        `timeout` (seconds) bounds the connect phase only. When it expires the
        attempt is abandoned, `on_timeout` is called and `TransportError` is
        raised.
        """
        if self._events is not None:
            await self.disconnect()

        effective_timeout = self.connect_timeout if timeout is None else timeout
        session = await self._get_session()
        events = EventConnection(
            url=self.endpoint.ws_url(self.client_id),
            heartbeat=self.heartbeat,
            logger=self.logger,
        )
        try:
            await events.open(session, timeout=effective_timeout)
        except asyncio.TimeoutError as exc:
            await events.close()
            if on_timeout is not None:
                on_timeout()
            raise TransportError("connection timeout") from exc
        except aiohttp.ClientError as exc:
            await events.close()
            self.logger.error("WebSockets error: %s", exc)
            raise TransportError(f"could not open event connection: {exc}") from exc
        self._events = events

    async def disconnect(self) -> None:
        """Close the event connection; pending tracking fails with ConnectionLostError."""
        events, self._events = self._events, None
        if events is not None:
            await events.close()

    async def close(self) -> None:
        await self.disconnect()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    # -- request channel ------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        data: Any = None,
        expect: str = "json",
    ) -> Any:
        """Perform one request; `expect` is "json", "bytes", or "none"."""
        session = await self._get_session()
        url = self.endpoint.http_url(path)
        self.logger.debug("-> %s %s", method, url)
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as resp:
                if not 200 <= resp.status < 300:
                    payload = await _read_error_payload(resp)
                    raise TransportError(
                        f"{method} {path} failed with HTTP {resp.status}",
                        status=resp.status,
                        payload=payload,
                    )
                if expect == "bytes":
                    return await resp.read()
                if expect == "none":
                    return None
                body = await resp.read()
                if not body.strip():
                    return None
                try:
                    return json.loads(body)
                except ValueError as exc:
                    raise TransportError(
                        f"{method} {path} returned invalid JSON", status=resp.status
                    ) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"{method} {path} timed out after {self.request_timeout:.1f}s"
            ) from exc

    # -- tracking operation ---------------------------------------------------

    async def queue_prompt(self, prompt: Prompt) -> QueuePromptResult:
        """Submit `prompt` for execution and return the assigned prompt id."""
        payload = RequestBuilder.build_prompt_payload(prompt, self.client_id)
        data = await self._request("POST", "/prompt", json_body=payload)
        prompt_id = data.get("prompt_id") if isinstance(data, Mapping) else None
        if not isinstance(prompt_id, str) or not prompt_id:
            raise TransportError("server did not return a prompt_id", payload=data)
        result = QueuePromptResult.from_dict(data)
        self.logger.info("Queued prompt %s (number=%s)", result.prompt_id, result.number)
        return result

    async def get_images(
        self,
        prompt: Prompt,
        *,
        on_event: Callable[[StreamEvent], None] | None = None,
    ) -> ImagesResponse:
        """Submit `prompt`, wait until it has executed, and download its images.

        Returns output node id -> images, each list in history order.
        `on_event` observes every stream event of this prompt.

        Raises `PreconditionError` without an open event connection,
        `TransportError` when submission fails, `ProtocolError` on a malformed
        stream frame, `ConnectionLostError` when the socket goes away,
        `ExecutionError` when the server aborts the prompt and `FetchError`
        when any image cannot be downloaded.
        """
        events = self._events
        if events is None or not events.connected:
            raise PreconditionError(
                "WebSocket client is not connected. Please call connect() before interacting."
            )

        def observe(event: StreamEvent) -> None:
            self._trace_event(event)
            if on_event is not None:
                on_event(event)

        registry = events.registry
        # Frames may arrive before POST /prompt returns; hold them for replay.
        backlog = registry.hold()
        try:
            queued = await self.queue_prompt(prompt)
            subscription = registry.subscribe(
                queued.prompt_id, on_event=observe, replay=backlog
            )
        finally:
            registry.release(backlog)

        try:
            await subscription.wait()
        finally:
            registry.unsubscribe(subscription)

        return await self._collect_outputs(queued.prompt_id)

    async def _collect_outputs(self, prompt_id: str) -> ImagesResponse:
        history = await self.get_history(prompt_id)
        record = history.get(prompt_id) if isinstance(history, Mapping) else None
        if record is None:
            raise FetchError(f"history record for prompt {prompt_id} is missing")

        planned = _output_refs(record)
        flat = [(node_id, ref) for node_id, refs in planned for ref in refs]
        semaphore = asyncio.Semaphore(self.max_concurrent_fetches)

        async def fetch(ref: ImageRef) -> bytes:
            async with semaphore:
                try:
                    return await self.get_image(ref.filename, ref.subfolder, ref.type)
                except TransportError as exc:
                    raise FetchError(
                        f"failed to fetch image {_describe_ref(ref)}: {exc}", ref
                    ) from exc

        tasks = [asyncio.ensure_future(fetch(ref)) for _, ref in flat]
        try:
            payloads = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        result: ImagesResponse = {node_id: [] for node_id, _ in planned}
        for (node_id, ref), payload in zip(flat, payloads):
            result[node_id].append(ImageContainer(image=ref, data=payload))
        self.logger.info(
            "Fetched %d image(s) from %d output node(s) for prompt %s",
            len(flat),
            len(result),
            prompt_id,
        )
        return result

    def _trace_event(self, event: StreamEvent) -> None:
        """Emit compact debug traces for events of a tracked prompt."""
        if not self.logger.isEnabledFor(logging.DEBUG):
            return

        details: list[str] = []
        if isinstance(event, NodeExecuting):
            details.append(f"node={event.node}")
        for key in ("value", "max", "node_type", "exception_message"):
            if key in event.data:
                details.append(f"{key}={event.data[key]}")

        summary = f"<- {event.kind} prompt={event.prompt_id}"
        if details:
            summary += " (" + ", ".join(details) + ")"
        self.logger.debug(summary)

    # -- pass-through endpoints -----------------------------------------------

    async def get_embeddings(self) -> list[str]:
        return await self._request("GET", "/embeddings")

    async def get_extensions(self) -> list[str]:
        return await self._request("GET", "/extensions")

    async def interrupt(self) -> None:
        await self._request("POST", "/interrupt", expect="none")

    async def edit_history(
        self, *, clear: bool = False, delete: Iterable[str] | None = None
    ) -> None:
        body = RequestBuilder.build_history_edit(clear=clear, delete=delete)
        await self._request("POST", "/history", json_body=body, expect="none")

    async def upload_image(
        self, image: bytes, filename: str, overwrite: bool | None = None
    ) -> UploadImageResult:
        form = RequestBuilder.build_upload_form(image, filename, overwrite=overwrite)
        data = await self._request("POST", "/upload/image", data=form)
        return UploadImageResult.from_dict(data or {})

    async def upload_mask(
        self,
        image: bytes,
        filename: str,
        original_ref: ImageRef,
        overwrite: bool | None = None,
    ) -> UploadImageResult:
        form = RequestBuilder.build_upload_form(
            image, filename, overwrite=overwrite, original_ref=original_ref
        )
        data = await self._request("POST", "/upload/mask", data=form)
        return UploadImageResult.from_dict(data or {})

    async def get_image(self, filename: str, subfolder: str, type: str) -> bytes:
        params = RequestBuilder.build_view_params(filename, subfolder, type)
        return await self._request("GET", "/view", params=params, expect="bytes")

    async def view_metadata(
        self, folder_name: FolderName | str, filename: str
    ) -> dict[str, Any]:
        """Read safetensors metadata; server error bodies surface on TransportError."""
        return await self._request(
            "GET",
            RequestBuilder.view_metadata_path(folder_name),
            params={"filename": filename},
        )

    async def get_system_stats(self) -> dict[str, Any]:
        return await self._request("GET", "/system_stats")

    async def get_prompt(self) -> dict[str, Any]:
        return await self._request("GET", "/prompt")

    async def get_object_info(self, node_class: str | None = None) -> dict[str, Any]:
        return await self._request("GET", RequestBuilder.object_info_path(node_class))

    async def get_history(self, prompt_id: str | None = None) -> dict[str, Any]:
        data = await self._request("GET", RequestBuilder.history_path(prompt_id))
        return data if data is not None else {}

    async def get_queue(self) -> dict[str, Any]:
        return await self._request("GET", "/queue")

    async def save_images(self, response: ImagesResponse, output_dir: str | Path) -> list[Path]:
        """Write every image of `response` into `output_dir`."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, write_images, response, output_dir)
