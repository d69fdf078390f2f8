from __future__ import annotations

"""Event-stream transport for the ComfyUI WebSocket protocol.

This module contains:
- server address parsing and URL construction
- parsing of pushed event frames into typed events
- the subscription registry that routes events to tracked prompts
- `EventConnection`, the persistent WebSocket feeding that registry
"""

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Union
from urllib.parse import urlencode, urlsplit

import aiohttp

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]

NULL_LOGGER = logging.getLogger("comfyuiclient.null")
NULL_LOGGER.addHandler(logging.NullHandler())
NULL_LOGGER.propagate = False

EXECUTING = "executing"
_FAILURE_KINDS = {"execution_error", "execution_interrupted"}
_CLOSED_LOCALLY = "event connection closed"


class ComfyUIError(RuntimeError):
    """Base class for errors raised by comfyuiclient."""


class ProtocolError(ComfyUIError):
    """Raised when a server message does not have the expected structure."""


class ConnectionLostError(ComfyUIError):
    """Raised when the event connection goes away while a prompt is tracked."""


class ExecutionError(ComfyUIError):
    """Raised when the server reports that a tracked prompt did not finish."""

    def __init__(self, prompt_id: str, kind: str, data: dict[str, Any]) -> None:
        detail = data.get("exception_message") or data.get("node_type") or ""
        message = f"prompt {prompt_id} ended with {kind}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.prompt_id = prompt_id
        self.kind = kind
        self.data = data


@dataclass
class ServerEndpoint:
    host: str
    use_https: bool = False
    use_wss: bool = False

    @property
    def http_base(self) -> str:
        return f"{'https' if self.use_https else 'http'}://{self.host}"

    @property
    def ws_base(self) -> str:
        return f"{'wss' if self.use_wss else 'ws'}://{self.host}"

    def http_url(self, path: str) -> str:
        return self.http_base + "/" + path.lstrip("/")

    def ws_url(self, client_id: str) -> str:
        return f"{self.ws_base}/ws?{urlencode({'clientId': client_id})}"


def parse_server_address(
    address: str, *, use_https: bool = False, use_wss: bool = False
) -> ServerEndpoint:
    # Accepts "host:port" or a URL; a secure scheme turns on both https and wss.
    text = str(address).strip()
    if not text:
        raise ValueError("server address cannot be empty")

    if "://" in text:
        parts = urlsplit(text)
        scheme = parts.scheme.lower()
        if scheme not in {"http", "https", "ws", "wss"}:
            raise ValueError(f"unsupported server address scheme: {scheme!r}")
        if scheme in {"https", "wss"}:
            use_https = use_wss = True
        host = parts.netloc + parts.path.rstrip("/")
    else:
        host = text.rstrip("/")

    if not host:
        raise ValueError(f"improper server address: {address}")
    return ServerEndpoint(host=host, use_https=use_https, use_wss=use_wss)


# ---------------------------------------------------------------------------
# Event frames.
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class StreamEvent:
    """One JSON frame pushed by the server."""

    kind: str
    prompt_id: str | None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeExecuting(StreamEvent):
    """The server started executing `node` for `prompt_id`."""

    node: str = ""


@dataclass(frozen=True)
class ExecutionCompleted(StreamEvent):
    """Every node of `prompt_id` has executed."""


@dataclass(frozen=True)
class ExecutionFailed(StreamEvent):
    """The server aborted `prompt_id` (error or interrupt)."""


def parse_event(text: str | bytes) -> StreamEvent:
    """Parse one text frame of the event stream.

    Raises `ProtocolError` when the frame is not a JSON object with a string
    `type`, or when an `executing` frame carries a non-object `data`.
    """
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ProtocolError("failed to decode event stream message") from exc
    if not isinstance(payload, dict):
        raise ProtocolError(f"event stream message is not an object: {payload!r}")

    kind = payload.get("type")
    if not isinstance(kind, str) or not kind:
        raise ProtocolError(f"event stream message without type: {payload!r}")

    data = payload.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        if kind == EXECUTING:
            raise ProtocolError(f"executing event with invalid data: {data!r}")
        # Extension nodes push free-form payloads; they are never tracked.
        return StreamEvent(kind=kind, prompt_id=None)

    prompt_id = data.get("prompt_id")
    if not isinstance(prompt_id, str):
        prompt_id = None

    if kind == EXECUTING:
        # The server has no dedicated "done" frame: an `executing` frame whose
        # node is null, empty or missing means the whole prompt has executed.
        node = data.get("node")
        if not node:
            return ExecutionCompleted(kind=kind, prompt_id=prompt_id, data=data)
        return NodeExecuting(kind=kind, prompt_id=prompt_id, data=data, node=str(node))

    if kind in _FAILURE_KINDS:
        return ExecutionFailed(kind=kind, prompt_id=prompt_id, data=data)

    return StreamEvent(kind=kind, prompt_id=prompt_id, data=data)


# ---------------------------------------------------------------------------
# Subscriptions.
# ---------------------------------------------------------------------------
EventCallback = Callable[[StreamEvent], None]


class Subscription:
    """Single-resolution wait for one prompt to finish executing.

    Only the first of completion, server-side failure, protocol error, or
    connection loss has any effect; later deliveries are ignored.
    """

    def __init__(
        self,
        prompt_id: str,
        future: "asyncio.Future[ExecutionCompleted]",
        *,
        on_event: EventCallback | None = None,
        logger: LoggerLike = NULL_LOGGER,
    ) -> None:
        self.prompt_id = prompt_id
        self._future = future
        self._on_event = on_event
        self._logger = logger

    @property
    def done(self) -> bool:
        return self._future.done()

    def deliver(self, event: StreamEvent) -> None:
        if self._future.done():
            return
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception:
                self._logger.warning(
                    "event callback failed for prompt %s", self.prompt_id, exc_info=True
                )

        if isinstance(event, ExecutionCompleted):
            self._logger.info("Done executing prompt (ID: %s)", self.prompt_id)
            self._future.set_result(event)
        elif isinstance(event, ExecutionFailed):
            self._future.set_exception(
                ExecutionError(self.prompt_id, event.kind, dict(event.data))
            )

    def fail(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)

    def cancel(self) -> None:
        if not self._future.done():
            self._future.cancel()

    async def wait(self) -> ExecutionCompleted:
        return await self._future


class Backlog:
    """Events and failures recorded while a submission is in flight."""

    def __init__(self) -> None:
        self.items: List[Union[StreamEvent, BaseException]] = []


class SubscriptionRegistry:
    """Routes parsed events to the subscriptions of their prompt id."""

    def __init__(self, logger: LoggerLike = NULL_LOGGER) -> None:
        self._logger = logger
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._backlogs: list[Backlog] = []
        self._closed: BaseException | None = None

    @property
    def active(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values())

    @property
    def closed(self) -> bool:
        return self._closed is not None

    def subscribe(
        self,
        prompt_id: str,
        *,
        on_event: EventCallback | None = None,
        replay: Backlog | None = None,
    ) -> Subscription:
        """Register interest in `prompt_id`, replaying a held backlog first."""
        future: asyncio.Future[ExecutionCompleted] = (
            asyncio.get_running_loop().create_future()
        )
        subscription = Subscription(
            prompt_id, future, on_event=on_event, logger=self._logger
        )
        self._subscriptions.setdefault(prompt_id, []).append(subscription)

        if replay is not None:
            for item in replay.items:
                if isinstance(item, BaseException):
                    subscription.fail(item)
                elif item.prompt_id == prompt_id:
                    subscription.deliver(item)
        if self._closed is not None:
            subscription.fail(self._closed)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove `subscription`; safe to call more than once."""
        subs = self._subscriptions.get(subscription.prompt_id)
        if subs is not None and subscription in subs:
            subs.remove(subscription)
            if not subs:
                del self._subscriptions[subscription.prompt_id]
        subscription.cancel()

    def hold(self) -> Backlog:
        backlog = Backlog()
        self._backlogs.append(backlog)
        return backlog

    def release(self, backlog: Backlog) -> None:
        if backlog in self._backlogs:
            self._backlogs.remove(backlog)

    def dispatch_text(self, text: str) -> None:
        try:
            event = parse_event(text)
        except ProtocolError as exc:
            self._logger.warning("malformed event stream message: %s", exc)
            self.fail_all(exc)
            return

        for backlog in self._backlogs:
            backlog.items.append(event)

        subs = self._subscriptions.get(event.prompt_id) if event.prompt_id else None
        if not subs:
            self._logger.debug(
                "ignoring %s event for untracked prompt %s", event.kind, event.prompt_id
            )
            return
        for subscription in list(subs):
            subscription.deliver(event)

    def dispatch_binary(self, data: bytes) -> None:
        # Previews are binary frames.
        self._logger.debug("Received binary data (%d bytes)", len(data))

    def fail_all(self, error: BaseException) -> None:
        for backlog in self._backlogs:
            backlog.items.append(error)
        for subs in list(self._subscriptions.values()):
            for subscription in list(subs):
                subscription.fail(error)

    def close(self, error: BaseException) -> None:
        """Fail everything pending and every later subscription with `error`."""
        self._closed = error
        self.fail_all(error)


# ---------------------------------------------------------------------------
# WebSocket connection.
# ---------------------------------------------------------------------------
class EventConnection:
    """Persistent WebSocket feeding a `SubscriptionRegistry`."""

    def __init__(
        self,
        *,
        url: str,
        heartbeat: float | None = None,
        logger: LoggerLike = NULL_LOGGER,
    ) -> None:
        self.url = url
        self.heartbeat = heartbeat
        self.registry = SubscriptionRegistry(logger)
        self._logger = logger
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self, session: aiohttp.ClientSession, timeout: float | None = None) -> None:
        """Open the socket and start the reader task.

        `timeout` bounds only the connect phase; aiohttp errors and
        `asyncio.TimeoutError` propagate to the caller.
        """
        self._logger.info("Connecting to url: %s", self.url)
        self._ws = await asyncio.wait_for(
            session.ws_connect(
                self.url,
                heartbeat=self.heartbeat,
                compress=0,
                max_msg_size=0,
            ),
            timeout,
        )
        self._logger.info("Connection open")
        self._reader = asyncio.create_task(self._read_loop(self._ws))

    async def close(self) -> None:
        ws, reader = self._ws, self._reader
        self._ws = None
        self._reader = None
        # Set before closing the socket so the reader reports a local close.
        self._closing = True
        if ws is not None:
            await ws.close()
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if not self.registry.closed:
            self.registry.close(ConnectionLostError(_CLOSED_LOCALLY))

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        reason = "event connection closed by server"
        try:
            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    self.registry.dispatch_text(message.data)
                elif message.type == aiohttp.WSMsgType.BINARY:
                    self.registry.dispatch_binary(message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    reason = f"event connection error: {ws.exception()}"
                    self._logger.error("WebSockets error: %s", ws.exception())
                    break
        finally:
            self._logger.info("Connection closed")
            if self._closing:
                reason = _CLOSED_LOCALLY
            self.registry.close(ConnectionLostError(reason))
