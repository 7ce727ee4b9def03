from __future__ import annotations

import codecs
import logging
import os
from threading import RLock, Thread
from typing import Callable

from sprite_hub.events import AssistantEvent, InitEvent, MalformedEvent, ResultEvent, decode_event
from sprite_hub.registry import BackgroundProcess, SessionRegistry
from sprite_hub.store import MessageStore, _now_ms
from sprite_hub.supervisor import ProcessSupervisor

LOGGER = logging.getLogger("sprite_hub.multiplexer")

READ_CHUNK_BYTES = 4096
ASSISTANT_PREVIEW_MAX_CHARS = 100

EVENT_REFRESH_SESSIONS = {"type": "refresh_sessions"}


class OutputMultiplexer:
    """Drains a subprocess's stdout/stderr and fans every event out to its clients.

    One reader thread per stream keeps broadcast order identical to the order
    lines were written by the subprocess.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store: MessageStore,
        supervisor: ProcessSupervisor,
        lifecycle_lock: RLock,
        rekey: Callable[[BackgroundProcess, str], None],
    ):
        self.registry = registry
        self.store = store
        self.supervisor = supervisor
        self._lifecycle_lock = lifecycle_lock
        self._rekey = rekey

    def start(self, bg: BackgroundProcess) -> None:
        pid = getattr(bg.process, "pid", None)
        Thread(target=self._stdout_loop, args=(bg,), name=f"stdout-{pid}", daemon=True).start()
        Thread(target=self._stderr_loop, args=(bg,), name=f"stderr-{pid}", daemon=True).start()

    def _stdout_loop(self, bg: BackgroundProcess) -> None:
        stdout = bg.process.stdout
        try:
            fd = stdout.fileno()
            while True:
                try:
                    chunk = os.read(fd, READ_CHUNK_BYTES)
                except OSError:
                    break
                if not chunk:
                    break
                bg.ready.set()
                self.feed(bg, chunk)
            if bg.buffer.strip():
                tail, bg.buffer = bg.buffer, b""
                self.handle_line(bg, tail)
        except Exception:
            LOGGER.exception("Error reading assistant output for session %s", bg.session_id)
        finally:
            self.finish(bg)

    def _stderr_loop(self, bg: BackgroundProcess) -> None:
        stderr = bg.process.stderr
        if stderr is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        try:
            fd = stderr.fileno()
            while True:
                try:
                    chunk = os.read(fd, READ_CHUNK_BYTES)
                except OSError:
                    break
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text.strip():
                    self.registry.broadcast(bg, {"type": "stderr", "message": text})
        except Exception:
            LOGGER.exception("Error reading assistant stderr for session %s", bg.session_id)

    def feed(self, bg: BackgroundProcess, chunk: bytes) -> None:
        bg.buffer += chunk
        *lines, bg.buffer = bg.buffer.split(b"\n")
        for line in lines:
            if line.strip():
                self.handle_line(bg, line)

    def handle_line(self, bg: BackgroundProcess, line: bytes) -> None:
        if bg.closed:
            return
        event = decode_event(line.decode("utf-8", errors="replace"))
        if isinstance(event, MalformedEvent):
            LOGGER.debug("Dropping output line for session %s: %s", bg.session_id, event.reason)
            return

        self.registry.broadcast(bg, event.raw)

        if isinstance(event, InitEvent):
            self._rekey(bg, event.session_id)
        elif isinstance(event, AssistantEvent):
            if event.text:
                bg.assistant_buffer = event.text
        elif isinstance(event, ResultEvent):
            self._complete_turn(bg)

    def _complete_turn(self, bg: BackgroundProcess) -> None:
        text = bg.assistant_buffer
        bg.assistant_buffer = ""
        bg.is_generating = False
        if not text:
            self.store.update_session(bg.session_id, {"isProcessing": False})
            return
        now = _now_ms()
        self.store.save_message(bg.session_id, {"role": "assistant", "content": text, "timestamp": now})
        self.store.update_session(
            bg.session_id,
            {
                "lastMessageAt": now,
                "lastMessage": text[:ASSISTANT_PREVIEW_MAX_CHARS],
                "isProcessing": False,
            },
        )
        self.registry.broadcast(bg, EVENT_REFRESH_SESSIONS)

    def finish(self, bg: BackgroundProcess) -> None:
        """Tear down after the subprocess closed stdout."""
        with self._lifecycle_lock:
            session_id = bg.session_id
            removed = self.registry.remove(session_id, expected=bg)
            if removed is not None:
                LOGGER.info("Assistant process finished for session %s", session_id)
                self.store.update_session(session_id, {"isProcessing": False})
                clients = self.registry.release_clients(bg)
                self.registry.park(session_id, clients)
                for client in clients:
                    client.send({"type": "processing", "isProcessing": False})
        stdin = bg.process.stdin
        if stdin is not None:
            try:
                stdin.close()
            except OSError:
                pass
        self.supervisor.reap(bg.process)
