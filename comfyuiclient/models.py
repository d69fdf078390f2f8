from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping

from .wire import ProtocolError

Prompt = Dict[str, Any]


class FolderName(str, Enum):
    """Model folders accepted by `/view_metadata`."""

    CHECKPOINTS = "checkpoints"
    CONFIGS = "configs"
    LORAS = "loras"
    VAE = "vae"
    CLIP = "clip"
    UNET = "unet"
    CLIP_VISION = "clip_vision"
    STYLE_MODELS = "style_models"
    EMBEDDINGS = "embeddings"
    DIFFUSERS = "diffusers"
    VAE_APPROX = "vae_approx"
    CONTROLNET = "controlnet"
    GLIGEN = "gligen"
    UPSCALE_MODELS = "upscale_models"
    CUSTOM_NODES = "custom_nodes"
    HYPERNETWORKS = "hypernetworks"


@dataclass(frozen=True)
class ImageRef:
    """Address of one artifact stored on the server."""

    filename: str
    subfolder: str = ""
    type: str = "output"

    @classmethod
    def from_dict(cls, payload: Any) -> "ImageRef":
        if not isinstance(payload, Mapping):
            raise ProtocolError(f"artifact reference is not an object: {payload!r}")
        filename = payload.get("filename")
        if not isinstance(filename, str) or not filename:
            raise ProtocolError(f"artifact reference without filename: {payload!r}")
        subfolder = payload.get("subfolder") or ""
        storage_type = payload.get("type") or "output"
        return cls(filename=filename, subfolder=str(subfolder), type=str(storage_type))

    def to_dict(self) -> dict[str, str]:
        return {"filename": self.filename, "subfolder": self.subfolder, "type": self.type}


@dataclass(frozen=True)
class ImageContainer:
    """Fetched artifact content paired with its reference."""

    image: ImageRef
    data: bytes


ImagesResponse = Dict[str, List[ImageContainer]]


@dataclass
class QueuePromptResult:
    """Response of a job submission."""

    prompt_id: str
    number: int | None = None
    node_errors: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "QueuePromptResult":
        number = payload.get("number")
        node_errors = payload.get("node_errors")
        return cls(
            prompt_id=str(payload["prompt_id"]),
            number=number if isinstance(number, int) else None,
            node_errors=dict(node_errors) if isinstance(node_errors, Mapping) else {},
        )


@dataclass
class UploadImageResult:
    """Where the server stored an uploaded image or mask."""

    name: str
    subfolder: str = ""
    type: str = "input"

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UploadImageResult":
        return cls(
            name=str(payload.get("name", "")),
            subfolder=str(payload.get("subfolder") or ""),
            type=str(payload.get("type") or "input"),
        )

    def as_ref(self) -> ImageRef:
        return ImageRef(filename=self.name, subfolder=self.subfolder, type=self.type)
