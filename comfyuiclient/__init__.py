"""Async client for the ComfyUI HTTP and WebSocket API."""

from .client import (
    ComfyUIClient,
    FetchError,
    PreconditionError,
    TransportError,
)
from .config import ComfyUIClientConfig, load_client_config
from .models import (
    FolderName,
    ImageContainer,
    ImageRef,
    ImagesResponse,
    Prompt,
    QueuePromptResult,
    UploadImageResult,
)
from .utils import load_prompt, summarize_images, write_images
from .wire import (
    ComfyUIError,
    ConnectionLostError,
    ExecutionCompleted,
    ExecutionError,
    ExecutionFailed,
    NodeExecuting,
    ProtocolError,
    StreamEvent,
    parse_event,
)

__all__ = [
    "ComfyUIClient",
    "ComfyUIClientConfig",
    "ComfyUIError",
    "ConnectionLostError",
    "ExecutionCompleted",
    "ExecutionError",
    "ExecutionFailed",
    "FetchError",
    "FolderName",
    "ImageContainer",
    "ImageRef",
    "ImagesResponse",
    "NodeExecuting",
    "PreconditionError",
    "Prompt",
    "ProtocolError",
    "QueuePromptResult",
    "StreamEvent",
    "TransportError",
    "UploadImageResult",
    "load_client_config",
    "load_prompt",
    "parse_event",
    "summarize_images",
    "write_images",
]
