from __future__ import annotations

from pathlib import Path

from setuptools import find_packages, setup


ROOT = Path(__file__).resolve().parent


def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


VERSION = read_text(ROOT / "VERSION").strip()
README = read_text(ROOT / "README.md")


setup(
    name="comfyuiclient",
    version=VERSION,
    description="Async HTTP and WebSocket client for ComfyUI.",
    long_description=README,
    long_description_content_type="text/markdown",
    author="comfyuiclient contributors",
    python_requires=">=3.9",
    packages=find_packages(include=["comfyuiclient", "comfyuiclient.*"]),
    include_package_data=True,
    install_requires=[
        "aiohttp>=3.8",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "comfyui-client=comfyuiclient.cli:main",
        ]
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3 :: Only",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Framework :: AsyncIO",
    ],
    keywords=["comfyui", "stable-diffusion", "websocket", "client"],
)
