from __future__ import annotations

"""Request builders translating typed client calls into HTTP payloads."""

import json
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import quote

import aiohttp

from .models import FolderName, ImageRef


def _require_text(value: str, name: str) -> str:
    """Return `value` stripped, rejecting empty strings."""
    text = str(value).strip()
    if not text:
        raise ValueError(f"{name} cannot be empty")
    return text


def _path_segment(value: str) -> str:
    return quote(value, safe="")


class RequestBuilder:
    """Build paths, query parameters, JSON bodies, and multipart forms."""

    @staticmethod
    def build_prompt_payload(prompt: Mapping[str, Any], client_id: str) -> dict[str, Any]:
        if not isinstance(prompt, Mapping):
            raise ValueError("prompt must be a mapping of node ids to node definitions")
        return {"prompt": dict(prompt), "client_id": client_id}

    @staticmethod
    def build_view_params(filename: str, subfolder: str, type: str) -> dict[str, str]:
        return {
            "filename": _require_text(filename, "filename"),
            "subfolder": subfolder or "",
            "type": type or "output",
        }

    @classmethod
    def build_ref_params(cls, ref: ImageRef) -> dict[str, str]:
        return cls.build_view_params(ref.filename, ref.subfolder, ref.type)

    @staticmethod
    def history_path(prompt_id: str | None = None) -> str:
        if prompt_id is None:
            return "/history"
        return "/history/" + _path_segment(_require_text(prompt_id, "prompt_id"))

    @staticmethod
    def object_info_path(node_class: str | None = None) -> str:
        if not node_class:
            return "/object_info"
        return "/object_info/" + _path_segment(node_class)

    @staticmethod
    def view_metadata_path(folder_name: FolderName | str) -> str:
        folder = folder_name.value if isinstance(folder_name, FolderName) else folder_name
        return "/view_metadata/" + _path_segment(_require_text(folder, "folder_name"))

    @staticmethod
    def build_history_edit(
        *, clear: bool = False, delete: Iterable[str] | None = None
    ) -> dict[str, Any]:
        """Build the `POST /history` body; at least one action is required."""
        body: dict[str, Any] = {}
        if clear:
            body["clear"] = True
        if delete is not None:
            ids = [_require_text(item, "prompt id") for item in delete]
            if ids:
                body["delete"] = ids
        if not body:
            raise ValueError("edit_history requires clear=True or prompt ids to delete")
        return body

    @staticmethod
    def build_upload_form(
        image: bytes,
        filename: str,
        *,
        overwrite: bool | None = None,
        original_ref: ImageRef | None = None,
    ) -> aiohttp.FormData:
        """Build the multipart body for `/upload/image` and `/upload/mask`."""
        if not isinstance(image, (bytes, bytearray, memoryview)):
            raise ValueError("image must be bytes")
        form = aiohttp.FormData()
        form.add_field(
            "image",
            bytes(image),
            filename=_require_text(filename, "filename"),
            content_type="application/octet-stream",
        )
        if original_ref is not None:
            form.add_field("original_ref", json.dumps(original_ref.to_dict()))
        if overwrite is not None:
            form.add_field("overwrite", "true" if overwrite else "false")
        return form
