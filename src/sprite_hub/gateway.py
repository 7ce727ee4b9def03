from __future__ import annotations

import base64
import json
import logging
from threading import RLock, Thread
from typing import Any

from fastapi import HTTPException

from sprite_hub.cli_sessions import parse_cli_session_messages
from sprite_hub.config import HubConfig
from sprite_hub.events import UserTurn
from sprite_hub.multiplexer import EVENT_REFRESH_SESSIONS, OutputMultiplexer
from sprite_hub.registry import BackgroundProcess, ClientConnection, SessionRegistry
from sprite_hub.store import MessageStore, UploadStore, _now_ms, is_placeholder_name
from sprite_hub.supervisor import ProcessSupervisor

LOGGER = logging.getLogger("sprite_hub.gateway")

USER_PREVIEW_MAX_CHARS = 50
SESSION_PREVIEW_MAX_CHARS = 100
TITLE_FALLBACK_MAX_CHARS = 40
IMAGE_ONLY_PROMPT = "What's in this image?"
IMAGE_ONLY_CONTENT = "[Image]"
DEFAULT_CHAT_NAME = "New Chat"


def _history_event(messages: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": "history", "messages": messages}


def _system_event(message: str, session_id: str) -> dict[str, Any]:
    return {"type": "system", "message": message, "sessionId": session_id}


def _processing_event(is_processing: bool) -> dict[str, Any]:
    return {"type": "processing", "isProcessing": bool(is_processing)}


def _fallback_title(text: str) -> str:
    trimmed = str(text or "")[:TITLE_FALLBACK_MAX_CHARS].strip()
    if not trimmed:
        return DEFAULT_CHAT_NAME
    return trimmed + ("..." if len(text) > TITLE_FALLBACK_MAX_CHARS else "")


class ConnectionGateway:
    """Session lifecycle: attaches clients, spawns processes and routes turns.

    A session is Idle when the registry has no process for it and Active
    otherwise. Every Idle -> Active transition, teardown and rekey runs under
    ``lifecycle_lock`` so two racing connects never spawn two processes for the
    same session. Writes to one process's stdin are ordered by its ``turn_lock``.
    """

    def __init__(
        self,
        config: HubConfig,
        store: MessageStore,
        uploads: UploadStore,
        registry: SessionRegistry,
        supervisor: ProcessSupervisor,
    ):
        self.config = config
        self.store = store
        self.uploads = uploads
        self.registry = registry
        self.supervisor = supervisor
        self.lifecycle_lock = RLock()
        self.multiplexer = OutputMultiplexer(
            registry,
            store,
            supervisor,
            lifecycle_lock=self.lifecycle_lock,
            rekey=self._rekey_from_init,
        )

    # Process lifecycle

    def _spawn(self, session: dict[str, Any], claim_turn: bool = False) -> BackgroundProcess:
        session_id = session["id"]
        process = self.supervisor.spawn(session.get("cwd"), session.get("claudeSessionId"))
        bg = BackgroundProcess(session_id=session_id, process=process)
        # The spawning turn owns stdin before any other caller can see the entry.
        if claim_turn:
            bg.turn_lock.acquire()
        try:
            previous = self.registry.put(session_id, bg)
            if previous is not None:
                previous.closed = True
                self.supervisor.kill(previous.process)
            self.multiplexer.start(bg)
        except Exception:
            if claim_turn:
                bg.turn_lock.release()
            raise
        return bg

    def ensure_process(self, session_id: str, claim_turn: bool = False) -> tuple[BackgroundProcess, bool]:
        """Return the session's process, spawning one if the session is Idle.

        With ``claim_turn`` a freshly spawned process comes back with its
        ``turn_lock`` already held by the caller.
        """
        with self.lifecycle_lock:
            session = self.store.require_session(session_id)
            bg = self.registry.get(session["id"])
            if bg is not None:
                return bg, False
            return self._spawn(session, claim_turn=claim_turn), True

    def _teardown(self, bg: BackgroundProcess) -> set[ClientConnection]:
        with self.lifecycle_lock:
            session_id = bg.session_id
            bg.closed = True
            self.supervisor.kill(bg.process)
            self.registry.remove(session_id, expected=bg)
            bg.assistant_buffer = ""
            bg.is_generating = False
            self.store.update_session(session_id, {"isProcessing": False})
            clients = self.registry.release_clients(bg)
            self.registry.park(session_id, clients)
        return clients

    def shutdown(self) -> int:
        closed = 0
        for _session_id, bg in self.registry.items():
            self._teardown(bg)
            closed += 1
        return closed

    # Connections

    def connect(self, session_id: str) -> ClientConnection:
        """Attach a new client, spawning the session's process when it is Idle.

        The returned client's queue already holds the history replay and, for a
        session mid-turn, the processing notice.
        """
        while True:
            bg, spawned = self.ensure_process(session_id)
            client = ClientConnection(session_id=bg.session_id)
            with bg.turn_lock:
                messages = self.store.load_messages(bg.session_id)
                client.send(_history_event(messages))
                if self.registry.attach(bg.session_id, client, expected=bg) is None:
                    # Torn down or reaped after the lookup; start over on a fresh entry.
                    LOGGER.debug("Process for session %s went away during connect; retrying.", bg.session_id)
                    continue
                if spawned:
                    LOGGER.info("Client %s connected to session %s", client.id[:8], client.session_id)
                    client.send(_system_event("Connected to assistant", client.session_id))
                elif bg.is_generating:
                    client.send(_system_event("Joined session - assistant is still working", client.session_id))
                    client.send(_processing_event(True))
            return client

    def disconnect(self, client: ClientConnection) -> None:
        self.registry.detach(client)
        client.close()

    def _turn_content(self, session_id: str, turn: UserTurn) -> tuple[Any, dict[str, str] | None]:
        if turn.image_id and not turn.has_image:
            raise HTTPException(status_code=400, detail="Incomplete image reference.")
        if not turn.has_image:
            return turn.content, None
        image_bytes = self.uploads.read_image_bytes(session_id, turn.image_filename)
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": turn.image_media_type,
                    "data": base64.b64encode(image_bytes).decode("ascii"),
                },
            },
            {"type": "text", "text": turn.content or IMAGE_ONLY_PROMPT},
        ]
        image = {"id": turn.image_id, "filename": turn.image_filename, "mediaType": turn.image_media_type}
        return content, image

    def _write_turn(
        self,
        bg: BackgroundProcess,
        client: ClientConnection,
        turn: UserTurn,
    ) -> OSError | ValueError | None:
        """Persist, broadcast and write one turn. Caller holds ``bg.turn_lock``."""
        session_id = bg.session_id
        content, image = self._turn_content(session_id, turn)
        session = self.store.get_session(session_id) or {}
        if not self.store.load_messages(session_id) and is_placeholder_name(session.get("name")):
            self._schedule_title_generation(session_id, turn.content or "Image shared")

        now = _now_ms()
        user_message: dict[str, Any] = {
            "role": "user",
            "content": turn.content or IMAGE_ONLY_CONTENT,
            "timestamp": now,
        }
        if image is not None:
            user_message["image"] = image
        self.store.save_message(session_id, user_message)
        preview = turn.content[:USER_PREVIEW_MAX_CHARS] if turn.content else IMAGE_ONLY_CONTENT
        self.store.update_session(
            session_id,
            {"lastMessageAt": now, "lastMessage": f"You: {preview}", "isProcessing": True},
        )
        self.registry.broadcast(bg, {"type": "user_message", "message": user_message}, exclude=client)

        line = json.dumps({"type": "user", "message": {"role": "user", "content": content}}) + "\n"
        bg.is_generating = True
        try:
            bg.process.stdin.write(line.encode("utf-8"))
            bg.process.stdin.flush()
        except (OSError, ValueError) as exc:
            return exc
        return None

    def submit_turn(self, client: ClientConnection, turn: UserTurn) -> None:
        if turn.is_empty:
            return
        while True:
            bg, spawned = self.ensure_process(client.session_id, claim_turn=True)
            if spawned:
                break
            bg.turn_lock.acquire()
            if self.registry.get(bg.session_id) is bg:
                break
            # Interrupted or reaped between lookup and lock; respawn instead.
            bg.turn_lock.release()
        try:
            if spawned:
                LOGGER.info("Spawned new assistant process for session %s after interruption", bg.session_id)
                self.registry.attach(bg.session_id, client)
                if not bg.ready.wait(max(0.0, float(self.config.startup_grace_seconds))):
                    LOGGER.debug("Assistant for session %s silent after startup grace; writing anyway.", bg.session_id)
            write_error = self._write_turn(bg, client, turn)
        finally:
            bg.turn_lock.release()

        if write_error is not None:
            LOGGER.warning("Failed to write turn to assistant for session %s: %s", bg.session_id, write_error)
            for other in self._teardown(bg):
                other.send(_processing_event(False))
            raise HTTPException(status_code=409, detail="Assistant process exited; send the message again to restart it.")

    def interrupt(self, client: ClientConnection) -> bool:
        """Hard-kill the session's process; a session without one is left untouched."""
        bg = self.registry.get(client.session_id)
        if bg is None:
            LOGGER.debug("Interrupt ignored for idle session %s", client.session_id)
            return False
        LOGGER.info("Interrupting assistant process for session %s", bg.session_id)
        for other in self._teardown(bg):
            other.send({"type": "result"})
            other.send(_processing_event(False))
        return True

    # Title generation

    def _schedule_title_generation(self, session_id: str, text: str) -> None:
        thread = Thread(target=self._generate_title, args=(session_id, text), daemon=True)
        thread.start()

    def _generate_title(self, session_id: str, text: str) -> None:
        try:
            title = self.supervisor.generate_title(text)
        except Exception as exc:
            LOGGER.warning("Failed to generate chat name for session %s: %s", session_id, exc)
            title = _fallback_title(text)
        try:
            self.store.update_session(session_id, {"name": title})
            self._notify_sessions_changed(session_id)
        except Exception:
            LOGGER.exception("Failed to store chat name for session %s", session_id)

    def _notify_sessions_changed(self, session_id: str) -> None:
        bg = self.registry.get(self.store.resolve_id(session_id))
        if bg is not None:
            self.registry.broadcast(bg, EVENT_REFRESH_SESSIONS)

    def regenerate_title(self, session_id: str) -> dict[str, Any]:
        session = self.store.require_session(session_id)
        messages = self.store.load_messages(session["id"])
        if not messages and session.get("claudeSessionId"):
            messages = parse_cli_session_messages(
                self.config.claude_projects_dir,
                session.get("cwd") or "",
                session["claudeSessionId"],
            )
        if not messages:
            raise HTTPException(status_code=400, detail="No messages to generate title from.")
        try:
            title = self.supervisor.generate_conversation_title(messages) or session["name"]
        except RuntimeError as exc:
            LOGGER.warning("Failed to regenerate title for session %s: %s", session["id"], exc)
            raise HTTPException(status_code=500, detail="Failed to generate title.") from exc
        self.store.update_session(session["id"], {"name": title})
        self._notify_sessions_changed(session["id"])
        return {"id": session["id"], "name": title}

    # Session management

    def list_sessions(self) -> list[dict[str, Any]]:
        active = self.registry.active_ids()
        sessions = self.store.list_sessions()
        for session in sessions:
            session["isProcessing"] = session["id"] in active
        sessions.sort(key=lambda item: item.get("lastMessageAt") or 0, reverse=True)
        return sessions

    def create_session(
        self,
        name: str | None = None,
        cwd: str | None = None,
        claude_session_id: str | None = None,
    ) -> dict[str, Any]:
        session = self.store.create_session(name=name, cwd=cwd, claude_session_id=claude_session_id)
        if not claude_session_id:
            return session
        imported = parse_cli_session_messages(self.config.claude_projects_dir, session["cwd"], claude_session_id)
        if not imported:
            return session
        self.store.save_messages(session["id"], imported)
        last = imported[-1]
        LOGGER.info("Imported %d CLI messages into session %s", len(imported), session["id"])
        return self.store.update_session(
            session["id"],
            {"lastMessage": last["content"][:SESSION_PREVIEW_MAX_CHARS], "lastMessageAt": last["timestamp"]},
        ) or session

    def update_session(self, session_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        session = self.store.require_session(session_id)
        allowed = {key: value for key, value in patch.items() if key in {"name", "cwd"} and value}
        if not allowed:
            return session
        return self.store.update_session(session["id"], allowed) or session

    def update_message_preview(self, session_id: str, content: str) -> None:
        session = self.store.require_session(session_id)
        self.store.update_session(
            session["id"],
            {"lastMessage": str(content)[:SESSION_PREVIEW_MAX_CHARS], "lastMessageAt": _now_ms()},
        )

    def delete_session(self, session_id: str) -> None:
        with self.lifecycle_lock:
            session = self.store.require_session(session_id)
            resolved = session["id"]
            bg = self.registry.get(resolved)
            if bg is not None:
                for client in self._teardown(bg):
                    client.send({"type": "error", "message": "Session deleted."})
            self.store.delete_session(resolved)
            self.uploads.delete_session(resolved)
        LOGGER.info("Deleted session %s", resolved)

    def rekey_session(self, old_id: str, new_id: str) -> dict[str, Any]:
        """Rename a session everywhere it is referenced, as one step."""
        with self.lifecycle_lock:
            resolved = self.store.resolve_id(old_id)
            session = self.store.rekey_session(resolved, new_id)
            if resolved != new_id:
                self.uploads.rekey(resolved, new_id)
                self.registry.rekey(resolved, new_id)
        return session

    def _rekey_from_init(self, bg: BackgroundProcess, reported_id: str) -> None:
        with self.lifecycle_lock:
            current = bg.session_id
            if reported_id != current:
                try:
                    self.rekey_session(current, reported_id)
                except HTTPException as exc:
                    LOGGER.warning(
                        "Keeping session id %s; assistant reported %s: %s", current, reported_id, exc.detail
                    )
            self.store.update_session(bg.session_id, {"claudeSessionId": reported_id})
        self.registry.broadcast(bg, EVENT_REFRESH_SESSIONS)
