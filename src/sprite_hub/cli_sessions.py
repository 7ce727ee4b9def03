"""Discovery and import of sessions recorded by the assistant CLI itself.

The CLI keeps one ``<session id>.jsonl`` transcript per conversation under
``~/.claude/projects/<cwd with "/" replaced by "-">/``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sprite_hub.store import _now_ms

LOGGER = logging.getLogger("sprite_hub.cli_sessions")

PREVIEW_SCAN_LINES = 20
PREVIEW_MAX_CHARS = 100
COMMAND_PREFIXES = ("<command-name>", "<local-command")


def cwd_to_project_dir(cwd: str) -> str:
    return str(cwd or "").replace("/", "-")


def project_dir_to_cwd(name: str) -> str:
    return "/" + name.replace("-", "/").lstrip("/")


def _parse_timestamp(value: Any) -> int:
    if not value:
        return _now_ms()
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return _now_ms()
    return int(parsed.timestamp() * 1000)


def _user_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                return str(block.get("text") or "")
    return ""


def _read_lines(path: Path) -> list[str]:
    try:
        return [line for line in path.read_text(encoding="utf-8", errors="ignore").splitlines() if line.strip()]
    except OSError as exc:
        LOGGER.warning("Failed to read CLI session %s: %s", path, exc)
        return []


def _preview(path: Path) -> str:
    for line in _read_lines(path)[:PREVIEW_SCAN_LINES]:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") != "user":
            continue
        message = entry.get("message")
        if not isinstance(message, dict):
            continue
        text = _user_text(message.get("content"))
        if text:
            return text[:PREVIEW_MAX_CHARS]
    return ""


def discover_claude_sessions(projects_dir: Path) -> list[dict[str, Any]]:
    """List CLI transcripts, most recently modified first."""
    sessions: list[dict[str, Any]] = []
    if not projects_dir.is_dir():
        return sessions
    for cwd_dir in projects_dir.iterdir():
        if not cwd_dir.is_dir():
            continue
        cwd = project_dir_to_cwd(cwd_dir.name)
        for path in cwd_dir.glob("*.jsonl"):
            try:
                stat = path.stat()
            except OSError:
                continue
            if stat.st_size == 0:
                continue
            sessions.append(
                {
                    "sessionId": path.stem,
                    "cwd": cwd,
                    "lastModified": int(stat.st_mtime * 1000),
                    "size": stat.st_size,
                    "preview": _preview(path),
                }
            )
    sessions.sort(key=lambda item: item["lastModified"], reverse=True)
    return sessions


def parse_cli_session_messages(projects_dir: Path, cwd: str, claude_session_id: str) -> list[dict[str, Any]]:
    """Convert a CLI transcript into stored user/assistant messages."""
    session_file = projects_dir / cwd_to_project_dir(cwd) / f"{claude_session_id}.jsonl"
    if not session_file.is_file():
        LOGGER.info("CLI session file not found: %s", session_file)
        return []

    messages: list[dict[str, Any]] = []
    for line in _read_lines(session_file):
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") not in {"user", "assistant"}:
            continue
        if entry.get("isMeta"):
            continue
        message = entry.get("message")
        if not isinstance(message, dict) or not message.get("content"):
            continue
        content = message.get("content")
        if isinstance(content, list) and content and isinstance(content[0], dict):
            if content[0].get("type") == "tool_result":
                continue
        timestamp = _parse_timestamp(entry.get("timestamp"))

        if entry["type"] == "user":
            text = _user_text(content)
            if text and not text.startswith(COMMAND_PREFIXES):
                messages.append({"role": "user", "content": text, "timestamp": timestamp})
            continue

        if isinstance(content, list):
            text = "\n\n".join(
                str(block.get("text") or "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
            if text:
                messages.append({"role": "assistant", "content": text, "timestamp": timestamp})
    return messages
