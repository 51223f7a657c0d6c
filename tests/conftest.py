"""Pytest configuration and fixtures for the media_uploader tests."""

import json
import threading
import time
from collections.abc import Generator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from flask import Flask
from flask.testing import FlaskClient

from media_uploader import config, create_app
from media_uploader.services import log_service, upload_manager
from media_uploader.services.errors import ToolUnavailableError
from media_uploader.services.events import BaseEventSink
from media_uploader.services.upload_task import UploadRequest

COMPLETED_OUTPUT = "\nFinal Job Status: Completed\n"
FAILED_OUTPUT = "\nFinal Job Status: Failed\n"
SAS_URL = "https://acct.blob.core.windows.net/show?sv=2021&sig=abc"


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Point settings, logs and metadata files at a temporary directory."""
    settings_file = tmp_path / "settings.json"
    settings_file.write_text(
        json.dumps(
            {
                "azcopy_path": "/nonexistent/azcopy",
                "settling_delay_seconds": 0.0,
                "metadata_directory": str(tmp_path / "metadata"),
                "log_directory": str(tmp_path / "logs"),
            }
        )
    )
    monkeypatch.setenv(config.ENV_SETTINGS_FILE, str(settings_file))
    for name in (
        config.ENV_AZCOPY_PATH,
        config.ENV_MAX_WORKERS,
        config.ENV_SETTLING_DELAY,
        config.ENV_LOG_DIRECTORY,
    ):
        monkeypatch.delenv(name, raising=False)

    config.Settings._instance = None
    log_service._log_service = None
    upload_manager._upload_manager = None

    yield tmp_path

    if upload_manager._upload_manager is not None:
        upload_manager._upload_manager.shutdown()
        upload_manager._upload_manager = None
    config.Settings._instance = None
    log_service._log_service = None


@pytest.fixture
def app() -> Flask:
    """Create application for testing."""
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


class FakeProcess:
    """Stand-in for RunningProcess replaying scripted output."""

    def __init__(self, chunks: Sequence[str], exit_code: int = 0, hold: bool = False) -> None:
        self.chunks = list(chunks)
        self.exit_code = exit_code
        self.pid = 4242
        self.terminated = False
        self.started = threading.Event()
        self._release = threading.Event()
        if not hold:
            self._release.set()

    def wait(self, on_output: Any = None) -> int:
        self.started.set()
        for chunk in self.chunks:
            if on_output is not None:
                on_output(chunk)
        self._release.wait(10)
        return -15 if self.terminated else self.exit_code

    def terminate(self) -> None:
        self.terminated = True
        self._release.set()

    def release(self) -> None:
        self._release.set()


@dataclass
class Script:
    """Output and exit code for launches whose arguments contain ``match``."""

    match: str
    chunks: list[str] = field(default_factory=lambda: [COMPLETED_OUTPUT])
    exit_code: int = 0
    hold: bool = False


class FakeRunner:
    """Scripted ProcessRunner recording every launch."""

    def __init__(self) -> None:
        self.scripts: list[Script] = []
        self.launches: list[tuple[str, ...]] = []
        self.launch_times: list[float] = []
        self.processes: list[FakeProcess] = []
        self.unavailable = False
        self._lock = threading.Lock()

    def script(
        self,
        match: str,
        chunks: Sequence[str] = (COMPLETED_OUTPUT,),
        exit_code: int = 0,
        hold: bool = False,
    ) -> None:
        # Later scripts take precedence
        self.scripts.insert(0, Script(match, list(chunks), exit_code, hold))

    def start(self, executable: str, arguments: Sequence[str]) -> FakeProcess:
        if self.unavailable:
            raise ToolUnavailableError(executable, "file not found")
        joined = " ".join(arguments)
        script = next((s for s in self.scripts if s.match in joined), Script(""))
        process = FakeProcess(script.chunks, script.exit_code, script.hold)
        with self._lock:
            self.launches.append(tuple(arguments))
            self.launch_times.append(time.monotonic())
            self.processes.append(process)
        return process

    def launched(self, verb: str) -> list[tuple[str, ...]]:
        """Launches whose first argument is ``verb``."""
        with self._lock:
            return [args for args in self.launches if args and args[0] == verb]


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Create a scripted runner that succeeds by default."""
    return FakeRunner()


class RecordingSink(BaseEventSink):
    """Event sink keeping every event in order."""

    def __init__(self) -> None:
        self.events: list[tuple[Any, ...]] = []
        self._lock = threading.Lock()

    def _record(self, *event: Any) -> None:
        with self._lock:
            self.events.append(event)

    def on_started(self, unit_id: str, retry: bool) -> None:
        self._record("started", unit_id, retry)

    def on_progress(self, unit_id: str, percent: int) -> None:
        self._record("progress", unit_id, percent)

    def on_status(self, unit_id: str, text: str) -> None:
        self._record("status", unit_id, text)

    def on_completed(self, unit_id: str) -> None:
        self._record("completed", unit_id)

    def on_failed(
        self, unit_id: str, error_message: str, recovery_context: UploadRequest | None
    ) -> None:
        self._record("failed", unit_id, error_message, recovery_context)

    def of(self, kind: str) -> list[tuple[Any, ...]]:
        with self._lock:
            return [e for e in self.events if e[0] == kind]


@pytest.fixture
def sink() -> RecordingSink:
    """Create a recording event sink."""
    return RecordingSink()


@pytest.fixture
def upload_request(tmp_path: Path) -> UploadRequest:
    """Two camera folders and one sound folder for a shoot day."""
    sources = tmp_path / "sources"
    dirs = {
        "Camera RAW": [str(sources / "A001"), str(sources / "A002")],
        "Sound": [str(sources / "SND01")],
    }
    for paths in dirs.values():
        for path in paths:
            Path(path).mkdir(parents=True)
    return UploadRequest(
        show_name="Show",
        season="Season 1",
        episode="Episode 3",
        shoot_day="Day 12",
        batch="B01",
        unit="Main",
        source_dirs=dirs,
        files={
            "Camera RAW": [
                {"clip1": {"filePath": "A001/clip1.mov", "size": 10}},
                {"clip2": {"filePath": "A002/clip2.mov", "size": 20}},
            ],
            "Sound": [{"filePath": "SND01/take1.wav", "size": 5}],
        },
        metadata={"show": "Show", "shootDay": "Day 12"},
    )
