"""
Shared fixtures: fake fetcher / engine / prober that stand in for the network
and for ffmpeg, writing small placeholder files where the real tools would.
"""

import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from reel_server.config import Settings
from reel_server.errors import EngineError, EngineNotFoundError, FetchError


class FakeFetcher:
    def __init__(self, failures: Optional[Dict[str, Exception]] = None, payload: bytes = b"media"):
        self.failures = failures or {}
        self.payload = payload
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def fetch(self, url: str, dest: str) -> None:
        with self._lock:
            self.calls.append((str(url), str(dest)))
        if str(url) in self.failures:
            raise self.failures[str(url)]
        Path(dest).write_bytes(self.payload)


class FakeEngine:
    def __init__(self, fail_on: Optional[str] = None, missing: bool = False, gate: threading.Event = None):
        self.fail_on = fail_on
        self.missing = missing
        self.gate = gate
        self.commands = []

    def version(self) -> str:
        if self.missing:
            raise EngineNotFoundError("FFmpeg not found")
        return "ffmpeg version 6.1.1 Copyright (c) 2000-2023 the FFmpeg developers"

    def run(self, command) -> None:
        if self.gate is not None:
            self.gate.wait(timeout=5)
        self.commands.append(command)
        if self.fail_on and os.path.basename(str(command.output)) == self.fail_on:
            raise EngineError("FFmpeg error: boom")
        Path(command.output).write_bytes(b"video")


class FakeProber:
    def __init__(self, durations: Optional[Dict[str, float]] = None, default: float = 5.0):
        self.durations = durations or {}
        self.default = default
        self.calls: List[str] = []

    def duration(self, path: str) -> float:
        self.calls.append(os.path.basename(str(path)))
        value = self.durations.get(os.path.basename(str(path)), self.default)
        if isinstance(value, Exception):
            raise value
        return value

    def metadata(self, path: str) -> dict:
        return {
            "streams": [{"codec_name": "h264", "width": 1080, "height": 1920, "r_frame_rate": "30/1"}],
            "format": {"duration": str(self.duration(path)), "size": str(os.path.getsize(path))},
        }


def commands_named(engine: FakeEngine, name: str):
    return [c for c in engine.commands if os.path.basename(str(c.output)) == name]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        max_jobs=2,
        jobs_dir=str(tmp_path / "jobs"),
        font_cache_dir=str(tmp_path / "fonts"),
        upload_dir=str(tmp_path / "uploads"),
        default_font="/usr/share/fonts/ttf-dejavu/DejaVuSans-Bold.ttf",
        cleanup_delay=60.0,
        upload_retention=1800.0,
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


def http_error(url: str, status: int = 404) -> FetchError:
    return FetchError(url, status=status)
