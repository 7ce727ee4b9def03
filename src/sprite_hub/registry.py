from __future__ import annotations

import logging
import queue
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any

LOGGER = logging.getLogger("sprite_hub.registry")

CLIENT_QUEUE_MAX = 512


def _queue_put(listener: queue.Queue[dict[str, Any] | None], value: dict[str, Any] | None) -> None:
    try:
        listener.put_nowait(value)
        return
    except queue.Full:
        pass

    try:
        listener.get_nowait()
    except queue.Empty:
        return

    try:
        listener.put_nowait(value)
    except queue.Full:
        return


@dataclass(eq=False)
class ClientConnection:
    """One attached WebSocket, seen by the core as an outbound event queue."""

    session_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    queue: queue.Queue[dict[str, Any] | None] = field(
        default_factory=lambda: queue.Queue(maxsize=CLIENT_QUEUE_MAX)
    )

    def send(self, event: dict[str, Any]) -> None:
        _queue_put(self.queue, event)

    def close(self) -> None:
        _queue_put(self.queue, None)


@dataclass(eq=False)
class BackgroundProcess:
    session_id: str
    process: subprocess.Popen
    buffer: bytes = b""
    assistant_buffer: str = ""
    is_generating: bool = False
    closed: bool = False
    started_at: float = field(default_factory=time.time)
    clients: set[ClientConnection] = field(default_factory=set)
    ready: Event = field(default_factory=Event)
    turn_lock: Lock = field(default_factory=Lock)


class SessionRegistry:
    """Process-wide map from session id to its running ``BackgroundProcess``.

    Clients whose process went away while they stayed connected are parked as
    standby clients and adopted by the next process spawned for that session.
    Removing an entry never kills its subprocess.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._processes: dict[str, BackgroundProcess] = {}
        self._standby: dict[str, set[ClientConnection]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._processes

    def get(self, session_id: str) -> BackgroundProcess | None:
        with self._lock:
            return self._processes.get(session_id)

    def put(self, session_id: str, bg: BackgroundProcess) -> BackgroundProcess | None:
        with self._lock:
            previous = self._processes.get(session_id)
            self._processes[session_id] = bg
            bg.session_id = session_id
            standby = self._standby.pop(session_id, set())
            bg.clients.update(standby)
        if previous is not None and previous is not bg:
            LOGGER.warning("Replaced stale process entry for session %s", session_id)
            return previous
        return None

    def remove(self, session_id: str, expected: BackgroundProcess | None = None) -> BackgroundProcess | None:
        with self._lock:
            current = self._processes.get(session_id)
            if current is None:
                return None
            if expected is not None and current is not expected:
                return None
            self._processes.pop(session_id, None)
            return current

    def items(self) -> list[tuple[str, BackgroundProcess]]:
        with self._lock:
            return list(self._processes.items())

    def active_ids(self) -> set[str]:
        with self._lock:
            return set(self._processes.keys())

    def remove_idle(self, session_id: str, bg: BackgroundProcess) -> bool:
        """Remove ``bg`` only if it is still current and nobody is attached to it."""
        with self._lock:
            if self._processes.get(session_id) is not bg or bg.clients:
                return False
            self._processes.pop(session_id, None)
            return True

    def attach(
        self,
        session_id: str,
        client: ClientConnection,
        expected: BackgroundProcess | None = None,
    ) -> BackgroundProcess | None:
        """Attach ``client`` to the session's process, or park it when there is none.

        With ``expected`` the client is attached only to that process; if it is
        no longer current nothing is recorded and ``None`` is returned.
        """
        with self._lock:
            bg = self._processes.get(session_id)
            if expected is not None and bg is not expected:
                return None
            client.session_id = session_id
            if bg is None:
                self._standby.setdefault(session_id, set()).add(client)
                return None
            bg.clients.add(client)
            count = len(bg.clients)
        LOGGER.info("Client %s joined session %s (%d clients now)", client.id[:8], session_id, count)
        return bg

    def detach(self, client: ClientConnection) -> None:
        with self._lock:
            session_id = client.session_id
            bg = self._processes.get(session_id)
            remaining = None
            if bg is not None and client in bg.clients:
                bg.clients.discard(client)
                remaining = len(bg.clients)
            standby = self._standby.get(session_id)
            if standby is not None:
                standby.discard(client)
                if not standby:
                    self._standby.pop(session_id, None)
        if remaining is None:
            LOGGER.info("Client %s disconnected from session %s", client.id[:8], session_id)
        else:
            LOGGER.info("Client %s left session %s (%d clients remaining)", client.id[:8], session_id, remaining)

    def park(self, session_id: str, clients: set[ClientConnection]) -> None:
        if not clients:
            return
        with self._lock:
            self._standby.setdefault(session_id, set()).update(clients)

    def standby_clients(self, session_id: str) -> set[ClientConnection]:
        with self._lock:
            return set(self._standby.get(session_id) or set())

    def clients(self, bg: BackgroundProcess) -> list[ClientConnection]:
        with self._lock:
            return list(bg.clients)

    def release_clients(self, bg: BackgroundProcess) -> set[ClientConnection]:
        with self._lock:
            clients = set(bg.clients)
            bg.clients.clear()
        return clients

    def broadcast(
        self,
        bg: BackgroundProcess,
        event: dict[str, Any],
        exclude: ClientConnection | None = None,
    ) -> int:
        targets = [client for client in self.clients(bg) if client is not exclude]
        for client in targets:
            client.send(event)
        return len(targets)

    def rekey(self, old_id: str, new_id: str) -> BackgroundProcess | None:
        """Move the entry, standby set and client routing from ``old_id`` to ``new_id``."""
        with self._lock:
            bg = self._processes.pop(old_id, None)
            if bg is not None:
                bg.session_id = new_id
                self._processes[new_id] = bg
                for client in bg.clients:
                    client.session_id = new_id
            standby = self._standby.pop(old_id, None)
            if standby:
                for client in standby:
                    client.session_id = new_id
                self._standby.setdefault(new_id, set()).update(standby)
        return bg
