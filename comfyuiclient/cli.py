from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .client import ComfyUIClient
from .config import DEFAULT_CONFIG_PATH
from .models import ImageRef, ImagesResponse
from .utils import load_prompt, summarize_images
from .wire import ComfyUIError, NodeExecuting, StreamEvent


def _configure_logging(verbose: bool) -> logging.Logger | None:
    if not verbose:
        return None
    logger = logging.getLogger("comfyuiclient")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[comfyuiclient] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")


def _emit_images_text(response: ImagesResponse, paths: list[Path]) -> None:
    summary = summarize_images(response)
    if not summary:
        sys.stdout.write("(no images)\n")
    for node_id, images in summary.items():
        sys.stdout.write("%s:\n" % node_id)
        if images:
            for image in images:
                sys.stdout.write("  %s (%d bytes)\n" % (image["filename"], image["size"]))
        else:
            sys.stdout.write("  (none)\n")
    for path in paths:
        sys.stdout.write("saved: %s\n" % path)


def _progress_printer(verbose: bool):
    def _print(event: StreamEvent) -> None:
        if isinstance(event, NodeExecuting):
            sys.stderr.write("executing node %s\n" % event.node)
        elif verbose and event.kind == "progress":
            sys.stderr.write(
                "progress %s/%s\n" % (event.data.get("value"), event.data.get("max"))
            )

    return _print


def _add_verbose_argument(
    parser: argparse.ArgumentParser, *, default: object = False
) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=default,
        help="Enable verbose connection and event tracing",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="comfyui-client",
        description="Command line client for a ComfyUI server.",
    )
    _add_verbose_argument(parser, default=False)
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to client config (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--server",
        default=None,
        help="Server address override, host:port or URL",
    )
    parser.add_argument(
        "--client-id",
        default=None,
        help="Client id used on the event stream (default: random)",
    )
    parser.add_argument(
        "--https",
        action="store_true",
        default=None,
        help="Use https for requests",
    )
    parser.add_argument(
        "--wss",
        action="store_true",
        default=None,
        help="Use wss for the event stream",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=None,
        help="Event connection timeout in seconds",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=None,
        help="Timeout in seconds for each HTTP request",
    )

    subparsers = parser.add_subparsers(dest="action", required=True)

    run = subparsers.add_parser("run", help="Queue a workflow and fetch its images")
    _add_verbose_argument(run, default=argparse.SUPPRESS)
    run.add_argument("workflow", help="API-format workflow JSON file")
    run.add_argument("--output-dir", help="Directory to save fetched images into")
    run.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format",
    )

    for name, help_text in (
        ("queue", "Show running and pending queue items"),
        ("prompt", "Show prompt queue status"),
        ("system-stats", "Show server system stats"),
        ("embeddings", "List embeddings"),
        ("extensions", "List web extensions"),
        ("interrupt", "Interrupt the running prompt"),
    ):
        simple = subparsers.add_parser(name, help=help_text)
        _add_verbose_argument(simple, default=argparse.SUPPRESS)

    history = subparsers.add_parser("history", help="Show prompt history")
    _add_verbose_argument(history, default=argparse.SUPPRESS)
    history.add_argument("prompt_id", nargs="?")

    object_info = subparsers.add_parser("object-info", help="Show node definitions")
    _add_verbose_argument(object_info, default=argparse.SUPPRESS)
    object_info.add_argument("node_class", nargs="?")

    upload = subparsers.add_parser("upload", help="Upload an image or mask")
    _add_verbose_argument(upload, default=argparse.SUPPRESS)
    upload.add_argument("image", help="Image file to upload")
    upload.add_argument("--name", help="Filename on the server (default: local name)")
    upload.add_argument("--overwrite", action="store_true", default=None)
    upload.add_argument(
        "--mask",
        action="store_true",
        help="Upload as a mask applied to --original-filename",
    )
    upload.add_argument("--original-filename")
    upload.add_argument("--original-subfolder", default="")
    upload.add_argument("--original-type", default="input")

    view_metadata = subparsers.add_parser(
        "view-metadata", help="Show safetensors metadata of a model file"
    )
    _add_verbose_argument(view_metadata, default=argparse.SUPPRESS)
    view_metadata.add_argument("folder_name")
    view_metadata.add_argument("filename")

    return parser


async def _run_action(ns: argparse.Namespace, client: ComfyUIClient, verbose: bool) -> int:
    if ns.action == "run":
        prompt = load_prompt(ns.workflow)
        async with client:
            response = await client.get_images(
                prompt, on_event=_progress_printer(verbose)
            )
            paths: list[Path] = []
            if ns.output_dir:
                paths = await client.save_images(response, ns.output_dir)
        if ns.format == "json":
            _emit_json(
                {
                    "images": summarize_images(response),
                    "saved": [str(path) for path in paths],
                }
            )
        else:
            _emit_images_text(response, paths)
        return 0

    try:
        if ns.action == "queue":
            _emit_json(await client.get_queue())
        elif ns.action == "prompt":
            _emit_json(await client.get_prompt())
        elif ns.action == "system-stats":
            _emit_json(await client.get_system_stats())
        elif ns.action == "embeddings":
            _emit_json(await client.get_embeddings())
        elif ns.action == "extensions":
            _emit_json(await client.get_extensions())
        elif ns.action == "interrupt":
            await client.interrupt()
        elif ns.action == "history":
            _emit_json(await client.get_history(ns.prompt_id))
        elif ns.action == "object-info":
            _emit_json(await client.get_object_info(ns.node_class))
        elif ns.action == "view-metadata":
            _emit_json(await client.view_metadata(ns.folder_name, ns.filename))
        else:
            image_path = Path(ns.image)
            image = image_path.read_bytes()
            filename = ns.name or image_path.name
            if ns.mask:
                if not ns.original_filename:
                    raise ValueError("--mask requires --original-filename")
                original_ref = ImageRef(
                    filename=ns.original_filename,
                    subfolder=ns.original_subfolder,
                    type=ns.original_type,
                )
                result = await client.upload_mask(
                    image, filename, original_ref, overwrite=ns.overwrite
                )
            else:
                result = await client.upload_image(image, filename, overwrite=ns.overwrite)
            _emit_json(result.as_ref().to_dict())
    finally:
        await client.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)
    verbose = bool(getattr(ns, "verbose", False))

    try:
        client = ComfyUIClient(
            ns.server,
            ns.client_id,
            use_https=ns.https,
            use_wss=ns.wss,
            config_path=ns.config,
            connect_timeout=ns.connect_timeout,
            request_timeout=ns.request_timeout,
            logger=_configure_logging(verbose),
        )
        return asyncio.run(_run_action(ns, client, verbose))
    except (ValueError, OSError, ComfyUIError) as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 2
