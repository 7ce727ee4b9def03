from __future__ import annotations

import logging
import time
from threading import Event, RLock, Thread

from sprite_hub.registry import SessionRegistry
from sprite_hub.store import MessageStore
from sprite_hub.supervisor import ProcessSupervisor

LOGGER = logging.getLogger("sprite_hub.reaper")


class IdleReaper:
    """Kills assistant processes nobody has watched for ``stale_after_seconds``."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: MessageStore,
        supervisor: ProcessSupervisor,
        lifecycle_lock: RLock,
        stale_after_seconds: float,
        interval_seconds: float,
    ):
        self.registry = registry
        self.store = store
        self.supervisor = supervisor
        self.lifecycle_lock = lifecycle_lock
        self.stale_after_seconds = float(stale_after_seconds)
        self.interval_seconds = max(0.05, float(interval_seconds))
        self._stop = Event()
        self._thread: Thread | None = None

    def sweep(self, now: float | None = None) -> list[str]:
        current = time.time() if now is None else now
        reaped: list[str] = []
        with self.lifecycle_lock:
            for session_id, bg in self.registry.items():
                if current - bg.started_at <= self.stale_after_seconds:
                    continue
                # A client attaching concurrently either lands before this check or finds the entry gone.
                if not self.registry.remove_idle(session_id, bg):
                    continue
                bg.closed = True
                self.supervisor.kill(bg.process)
                self.store.update_session(session_id, {"isProcessing": False})
                reaped.append(session_id)
                LOGGER.info(
                    "Reaped idle assistant for session %s after %.0fs",
                    session_id,
                    current - bg.started_at,
                )
        return reaped

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception:
                LOGGER.exception("Idle reaper sweep failed.")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._run, name="idle-reaper", daemon=True)
        self._thread.start()
        LOGGER.debug("Idle reaper started interval=%ss stale_after=%ss", self.interval_seconds, self.stale_after_seconds)

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout=max(1.0, self.interval_seconds))
