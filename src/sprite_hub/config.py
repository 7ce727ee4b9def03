from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8081
DEFAULT_CLAUDE_COMMAND = "claude"
DEFAULT_STALE_AFTER_SECONDS = 30 * 60
DEFAULT_REAP_INTERVAL_SECONDS = 60
DEFAULT_STARTUP_GRACE_SECONDS = 0.1
DEFAULT_TITLE_TIMEOUT_SECONDS = 60.0
HUB_LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")


def _repo_root() -> Path:
    for parent in Path(__file__).resolve().parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parents[2]


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "sprite-hub"


def _default_public_dir() -> Path:
    return _repo_root() / "public"


def _default_home_dir() -> Path:
    return Path(os.environ.get("HOME") or str(Path.home()))


@dataclass
class HubConfig:
    data_dir: Path
    claude_command: str = DEFAULT_CLAUDE_COMMAND
    home_dir: Path | None = None
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS
    reap_interval_seconds: float = DEFAULT_REAP_INTERVAL_SECONDS
    startup_grace_seconds: float = DEFAULT_STARTUP_GRACE_SECONDS
    title_timeout_seconds: float = DEFAULT_TITLE_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.home_dir is None:
            self.home_dir = _default_home_dir()
        self.home_dir = Path(self.home_dir)

    @property
    def messages_dir(self) -> Path:
        return self.data_dir / "messages"

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def sessions_file(self) -> Path:
        return self.data_dir / "sessions.json"

    @property
    def sprites_file(self) -> Path:
        return self.data_dir / "sprites.json"

    @property
    def claude_projects_dir(self) -> Path:
        return Path(self.home_dir or _default_home_dir()) / ".claude" / "projects"
