from __future__ import annotations

"""Configuration parsing for comfyui-client config files.

Only the `[client]` section is read; other sections are left for tools that
share the same file.
"""

import os
import re
from dataclasses import dataclass

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.expanduser("~"), ".config", "comfyui-client", "client.conf"
)
DEFAULT_SERVER_ADDRESS = "127.0.0.1:8188"


@dataclass
class ComfyUIClientConfig:
    """Connection and transfer settings loaded from client.conf."""

    server_address: str = DEFAULT_SERVER_ADDRESS
    use_https: bool = False
    use_wss: bool = False
    connect_timeout: float | None = None
    request_timeout: float = 60.0
    max_concurrent_fetches: int = 4
    heartbeat: float = 30.0


def _parse_bool(value: str) -> bool:
    """Parse config booleans where only literal 'true' enables a flag."""
    return value.strip().lower() == "true"


def _parse_optional_seconds(value: str) -> float | None:
    value = value.strip()
    if not value or value.lower() == "none":
        return None
    return float(value)


def _strip_comments(record: str) -> str:
    """Drop inline comments while preserving leading assignment content."""
    hash_pos = record.find("#")
    if hash_pos == -1:
        return record
    return record[:hash_pos]


def _apply_environment(cfg: ComfyUIClientConfig) -> None:
    server_address = os.environ.get("COMFYUI_SERVER_ADDRESS")
    if server_address:
        cfg.server_address = server_address.strip()
    use_https = os.environ.get("COMFYUI_USE_HTTPS")
    if use_https is not None:
        cfg.use_https = _parse_bool(use_https)
    use_wss = os.environ.get("COMFYUI_USE_WSS")
    if use_wss is not None:
        cfg.use_wss = _parse_bool(use_wss)


def load_client_config(path: str = DEFAULT_CONFIG_PATH) -> ComfyUIClientConfig:
    """
    Parse client configuration from disk, then apply environment overrides.

    A missing file yields defaults. Unknown keys are ignored so one file can
    carry settings for other tools.
    """

    cfg = ComfyUIClientConfig()
    if path and os.path.exists(path):
        _read_config_file(path, cfg)
    _apply_environment(cfg)
    return cfg


def _read_config_file(path: str, cfg: ComfyUIClientConfig) -> None:
    section_re = re.compile(r"^\s*\[([^\]]+)\]\s*$")
    kv_re = re.compile(r"^\s*(\w+)\s*=\s*(.*?)\s*$")
    in_client_section = False

    with open(path, "r", encoding="utf-8") as fp:
        for raw_record in fp:
            record = _strip_comments(raw_record).strip()
            if not record:
                continue

            section_match = section_re.match(record)
            if section_match:
                in_client_section = section_match.group(1) == "client"
                continue

            if not in_client_section:
                continue

            kv_match = kv_re.match(record)
            if not kv_match:
                continue

            key, value = kv_match.group(1), kv_match.group(2)
            if key == "serverAddress":
                cfg.server_address = value
            elif key == "useHttps":
                cfg.use_https = _parse_bool(value)
            elif key == "useWss":
                cfg.use_wss = _parse_bool(value)
            elif key == "connectTimeout":
                cfg.connect_timeout = _parse_optional_seconds(value)
            elif key == "requestTimeout":
                cfg.request_timeout = float(value)
            elif key == "maxConcurrentFetches":
                cfg.max_concurrent_fetches = max(1, int(value))
            elif key == "heartbeat":
                cfg.heartbeat = float(value)
