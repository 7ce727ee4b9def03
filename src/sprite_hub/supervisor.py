from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Any

from fastapi import HTTPException

from sprite_hub.config import HubConfig

LOGGER = logging.getLogger("sprite_hub.supervisor")

CHAT_TITLE_MAX_CHARS = 50
CHAT_TITLE_SOURCE_MAX_CHARS = 500
CHAT_TITLE_CONVERSATION_MAX_CHARS = 1500
PROCESS_REAP_TIMEOUT_SECONDS = 5.0


def _truncate_title(text: str, max_chars: int = CHAT_TITLE_MAX_CHARS) -> str:
    lines = [line.strip() for line in str(text or "").splitlines() if line.strip()]
    if not lines:
        return ""
    return lines[0].strip("\"'`").strip()[:max_chars].strip()


def _is_process_running(process: Any) -> bool:
    if process is None:
        return False
    try:
        return process.poll() is None
    except OSError:
        return False


class ProcessSupervisor:
    """Spawns and terminates assistant CLI processes in stream-json mode."""

    def __init__(self, config: HubConfig):
        self.config = config

    def command(self, resume_token: str | None = None) -> list[str]:
        cmd = [
            self.config.claude_command,
            "--print",
            "--verbose",
            "--dangerously-skip-permissions",
            "--output-format",
            "stream-json",
            "--input-format",
            "stream-json",
        ]
        if resume_token:
            cmd.extend(["--resume", str(resume_token)])
        return cmd

    def _resolve_cwd(self, cwd: str | None) -> Path:
        home = Path(self.config.home_dir or Path.home())
        if not cwd:
            return home
        candidate = Path(cwd).expanduser()
        if candidate.is_dir():
            return candidate
        LOGGER.warning("Working directory %s does not exist; using %s", cwd, home)
        return home

    def spawn(self, cwd: str | None, resume_token: str | None = None) -> subprocess.Popen:
        cmd = self.command(resume_token)
        workdir = self._resolve_cwd(cwd)
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(workdir),
                close_fds=True,
                start_new_session=True,
            )
        except OSError as exc:
            LOGGER.error("Failed to spawn assistant process cmd=%s cwd=%s: %s", cmd[0], workdir, exc)
            raise HTTPException(status_code=503, detail=f"Failed to start assistant: {exc}") from exc
        LOGGER.info(
            "Spawned assistant pid=%s cwd=%s%s",
            process.pid,
            workdir,
            f" resume={resume_token}" if resume_token else "",
        )
        return process

    def kill(self, process: Any) -> None:
        """Send SIGKILL to the process group; a process that is already gone is ignored."""
        if process is None:
            return
        pid = getattr(process, "pid", None)
        if not _is_process_running(process):
            LOGGER.debug("Kill skipped for pid=%s: process already exited.", pid)
            return
        try:
            pgid = os.getpgid(pid)
        except (ProcessLookupError, OSError, TypeError):
            pgid = None
        try:
            # Only signal groups led by the child itself (start_new_session).
            if pgid and pgid == pid:
                os.killpg(pgid, signal.SIGKILL)
            else:
                process.kill()
        except (ProcessLookupError, PermissionError, OSError) as exc:
            try:
                process.kill()
            except (ProcessLookupError, OSError):
                LOGGER.debug("Kill of pid=%s failed: %s", pid, exc)
                return
        LOGGER.info("Killed assistant pid=%s", pid)

    def reap(self, process: Any) -> int | None:
        try:
            return process.wait(timeout=PROCESS_REAP_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Assistant pid=%s did not exit after stdout closed.", getattr(process, "pid", None))
            return None
        except OSError:
            return None

    def generate_title(self, text: str) -> str:
        prompt = (
            "Generate a very short title (3-5 words max) for a chat that starts with this message. "
            "Reply with ONLY the title, no quotes or punctuation:\n\n"
            f"{str(text or '')[:CHAT_TITLE_SOURCE_MAX_CHARS]}"
        )
        return self._run_title_prompt(prompt)

    def generate_conversation_title(self, messages: list[dict[str, Any]]) -> str:
        summary = "\n".join(
            f"{message.get('role')}: {str(message.get('content') or '')[:200]}" for message in messages[:10]
        )
        prompt = (
            "Based on this conversation, generate a very short title (3-5 words max) that captures the main topic. "
            "Reply with ONLY the title, no quotes or punctuation:\n\n"
            f"{summary[:CHAT_TITLE_CONVERSATION_MAX_CHARS]}"
        )
        return self._run_title_prompt(prompt)

    def _run_title_prompt(self, prompt: str) -> str:
        cmd = [self.config.claude_command, "--print", "-p", prompt]
        try:
            result = subprocess.run(
                cmd,
                check=False,
                text=True,
                capture_output=True,
                timeout=max(1.0, float(self.config.title_timeout_seconds)),
            )
        except subprocess.TimeoutExpired as exc:
            raise RuntimeError("Title request timed out.") from exc
        except OSError as exc:
            raise RuntimeError(f"Title request failed to start: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip().splitlines()
            raise RuntimeError(f"Title request failed: {detail[-1] if detail else result.returncode}")
        title = _truncate_title(result.stdout)
        if not title:
            raise RuntimeError("Title request returned an empty title.")
        return title
