from __future__ import annotations

"""Helpers shared by the client and the CLI.

These cover loading workflow files, writing fetched images to disk, and
turning a result collection into JSON-friendly summaries.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

from .models import ImagesResponse, Prompt


def load_prompt(path: str | Path) -> Prompt:
    """Load an API-format workflow (node id -> node definition) from JSON."""
    with open(path, "r", encoding="utf-8") as fp:
        try:
            payload = json.load(fp)
        except json.JSONDecodeError as exc:
            raise ValueError(f"workflow file is not valid JSON: {path}") from exc

    if not isinstance(payload, dict):
        raise ValueError(f"workflow file must contain a JSON object: {path}")
    # Files exported with "Save (API)" are bare graphs; some tools wrap them.
    if "prompt" in payload and isinstance(payload["prompt"], dict):
        payload = payload["prompt"]
    return payload


def write_images(response: ImagesResponse, output_dir: str | Path) -> List[Path]:
    """Write every image in `response` to `output_dir`, replacing existing files.

    Only the base name of each server filename is used, so a subfolder in the
    reference never escapes `output_dir`.
    """
    target = Path(output_dir)
    target.mkdir(parents=True, exist_ok=True)

    written: List[Path] = []
    for images in response.values():
        for container in images:
            output_path = target / Path(container.image.filename).name
            output_path.write_bytes(container.data)
            written.append(output_path)
    return written


def summarize_images(response: ImagesResponse) -> Dict[str, List[Dict[str, Any]]]:
    """Describe a result collection without its binary content."""
    summary: Dict[str, List[Dict[str, Any]]] = {}
    for node_id, images in response.items():
        summary[node_id] = [
            {**container.image.to_dict(), "size": len(container.data)}
            for container in images
        ]
    return summary
