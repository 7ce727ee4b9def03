from __future__ import annotations

import json
import os
import queue
import time
from pathlib import Path
from threading import Lock
from typing import Any, Callable

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from sprite_hub.config import HubConfig
from sprite_hub.gateway import ConnectionGateway
from sprite_hub.registry import ClientConnection, SessionRegistry
from sprite_hub.store import MessageStore, UploadStore
from sprite_hub.supervisor import ProcessSupervisor

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeStdin:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.closed = False
        self.broken = False

    def write(self, data: bytes) -> int:
        if self.broken or self.closed:
            raise BrokenPipeError(32, "Broken pipe")
        self.chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        if self.broken:
            raise BrokenPipeError(32, "Broken pipe")

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stands in for ``subprocess.Popen``; stdout/stderr are real pipes."""

    _next_pid = 2**30

    def __init__(self, args: list[str] | None = None, cwd: str | None = None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.args = list(args or [])
        self.cwd = cwd
        self.returncode: int | None = None
        self.killed = False
        self.stdin = FakeStdin()
        out_read, self._out_write = os.pipe()
        err_read, self._err_write = os.pipe()
        self.stdout = os.fdopen(out_read, "rb", buffering=0)
        self.stderr = os.fdopen(err_read, "rb", buffering=0)
        self._lock = Lock()

    def emit_raw(self, data: bytes) -> None:
        with self._lock:
            if self._out_write is not None:
                os.write(self._out_write, data)

    def emit(self, payload: dict[str, Any]) -> None:
        self.emit_raw((json.dumps(payload) + "\n").encode("utf-8"))

    def emit_stderr(self, text: str) -> None:
        with self._lock:
            if self._err_write is not None:
                os.write(self._err_write, text.encode("utf-8"))

    def exit(self, code: int = 0) -> None:
        with self._lock:
            if self.returncode is None:
                self.returncode = code
            for name in ("_out_write", "_err_write"):
                fd = getattr(self, name)
                if fd is not None:
                    os.close(fd)
                    setattr(self, name, None)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int | None:
        return self.returncode

    def stdin_payloads(self) -> list[dict[str, Any]]:
        data = b"".join(self.stdin.chunks).decode("utf-8")
        return [json.loads(line) for line in data.splitlines() if line.strip()]


class FakeSupervisor(ProcessSupervisor):
    def __init__(self, config: HubConfig, title: str = "Generated Title"):
        super().__init__(config)
        self.spawned: list[FakeProcess] = []
        self.spawn_calls: list[tuple[str | None, str | None]] = []
        self.killed: list[Any] = []
        self.title = title
        self.title_error: Exception | None = None
        self.title_prompts: list[Any] = []
        self.spawn_delay = 0.0
        self._lock = Lock()

    def spawn(self, cwd: str | None, resume_token: str | None = None) -> FakeProcess:
        if self.spawn_delay:
            time.sleep(self.spawn_delay)
        process = FakeProcess(self.command(resume_token), cwd)
        with self._lock:
            self.spawn_calls.append((cwd, resume_token))
            self.spawned.append(process)
        return process

    def kill(self, process: Any) -> None:
        if process is None or process.poll() is not None:
            return
        self.killed.append(process)
        process.kill()

    def generate_title(self, text: str) -> str:
        self.title_prompts.append(text)
        if self.title_error is not None:
            raise self.title_error
        return self.title

    def generate_conversation_title(self, messages: list[dict[str, Any]]) -> str:
        self.title_prompts.append(list(messages))
        if self.title_error is not None:
            raise self.title_error
        return self.title


def make_config(tmp_dir: Path, **overrides: Any) -> HubConfig:
    home = tmp_dir / "home"
    home.mkdir(parents=True, exist_ok=True)
    return HubConfig(data_dir=tmp_dir / "data", home_dir=home, **overrides)


def make_gateway(tmp_dir: Path, **overrides: Any) -> ConnectionGateway:
    config = make_config(tmp_dir, **overrides)
    return ConnectionGateway(
        config,
        MessageStore(config),
        UploadStore(config),
        SessionRegistry(),
        FakeSupervisor(config),
    )


def next_event(client: ClientConnection, event_type: str | None = None, timeout: float = 2.0) -> dict[str, Any]:
    """Return the next queued event, skipping events of other types when ``event_type`` is given."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError(f"Timed out waiting for event type={event_type!r}")
        try:
            event = client.queue.get(timeout=remaining)
        except queue.Empty:
            continue
        if event is None:
            raise AssertionError(f"Client closed while waiting for event type={event_type!r}")
        if event_type is None or event.get("type") == event_type:
            return event


def drain(client: ClientConnection) -> list[dict[str, Any] | None]:
    events: list[dict[str, Any] | None] = []
    while True:
        try:
            events.append(client.queue.get_nowait())
        except queue.Empty:
            return events


def wait_until(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.01) -> Any:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError("Condition not met before timeout.")
