from __future__ import annotations

import json
import logging
import re
import shutil
import time
import uuid
from pathlib import Path
from threading import RLock
from typing import Any

from fastapi import HTTPException

from sprite_hub.config import HubConfig

LOGGER = logging.getLogger("sprite_hub.store")

STATE_VERSION = 1
PLACEHOLDER_NAME_RE = re.compile(r"^Chat \d+$")
SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
SAFE_FILENAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
ALIAS_CHAIN_MAX = 32
DEFAULT_SPRITE_PORT = 8080
IMAGE_SNIFF_BYTES = 12
UPLOAD_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_id() -> str:
    return str(uuid.uuid4())


def is_safe_id(value: Any) -> bool:
    return isinstance(value, str) and bool(SAFE_ID_RE.match(value))


def is_placeholder_name(name: Any) -> bool:
    return bool(PLACEHOLDER_NAME_RE.match(str(name or "")))


def _new_state() -> dict[str, Any]:
    return {"version": STATE_VERSION, "sessions": [], "aliases": {}}


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _normalize_session(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    session_id = str(raw.get("id") or "").strip()
    if not session_id:
        return None
    now = _now_ms()
    session: dict[str, Any] = {
        "id": session_id,
        "name": str(raw.get("name") or "New Chat"),
        "cwd": str(raw.get("cwd") or ""),
        "createdAt": _coerce_int(raw.get("createdAt"), now),
        "lastMessageAt": _coerce_int(raw.get("lastMessageAt"), now),
        "isProcessing": bool(raw.get("isProcessing")),
    }
    if raw.get("lastMessage") is not None:
        session["lastMessage"] = str(raw.get("lastMessage"))
    if raw.get("claudeSessionId"):
        session["claudeSessionId"] = str(raw.get("claudeSessionId"))
    return session


def _normalize_message(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    role = str(raw.get("role") or "")
    if role not in {"user", "assistant"}:
        return None
    message: dict[str, Any] = {
        "role": role,
        "content": str(raw.get("content") or ""),
        "timestamp": _coerce_int(raw.get("timestamp"), _now_ms()),
    }
    image = raw.get("image")
    if isinstance(image, dict) and image.get("id") and image.get("filename"):
        message["image"] = {
            "id": str(image.get("id")),
            "filename": str(image.get("filename")),
            "mediaType": str(image.get("mediaType") or ""),
        }
    return message


class MessageStore:
    """Flat-file persistence for chat sessions and their transcripts.

    Sessions live in one ``sessions.json`` document together with the alias
    index written on every rekey. Each transcript is an append-only JSON list in
    ``messages/<session id>.json``. A single lock guards every read-modify-write
    so reader threads and request handlers never interleave partial updates.
    """

    def __init__(self, config: HubConfig):
        self.config = config
        self.data_dir = config.data_dir
        self.sessions_file = config.sessions_file
        self.messages_dir = config.messages_dir
        self._lock = RLock()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.messages_dir.mkdir(parents=True, exist_ok=True)

    def load(self) -> dict[str, Any]:
        with self._lock:
            if not self.sessions_file.exists():
                return _new_state()
            try:
                loaded = json.loads(self.sessions_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                LOGGER.warning("Unreadable sessions file %s; starting empty.", self.sessions_file)
                return _new_state()
        if isinstance(loaded, list):
            # Older data directories hold a bare list of sessions.
            loaded = {"sessions": loaded}
        if not isinstance(loaded, dict):
            return _new_state()
        sessions = [session for session in map(_normalize_session, loaded.get("sessions") or []) if session]
        aliases_raw = loaded.get("aliases")
        aliases: dict[str, str] = {}
        if isinstance(aliases_raw, dict):
            aliases = {str(key): str(value) for key, value in aliases_raw.items() if key and value}
        return {"version": loaded.get("version", STATE_VERSION), "sessions": sessions, "aliases": aliases}

    def save(self, state: dict[str, Any]) -> None:
        with self._lock:
            tmp_file = self.sessions_file.with_suffix(".json.tmp")
            with tmp_file.open("w", encoding="utf-8") as fp:
                json.dump(state, fp, indent=2)
            tmp_file.replace(self.sessions_file)

    def resolve_id(self, session_id: str) -> str:
        aliases = self.load()["aliases"]
        current = str(session_id)
        for _ in range(ALIAS_CHAIN_MAX):
            target = aliases.get(current)
            if not target or target == current:
                break
            current = target
        return current

    def list_sessions(self) -> list[dict[str, Any]]:
        return list(self.load()["sessions"])

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        resolved = self.resolve_id(session_id)
        for session in self.load()["sessions"]:
            if session["id"] == resolved:
                return session
        return None

    def require_session(self, session_id: str) -> dict[str, Any]:
        session = self.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found.")
        return session

    def create_session(
        self,
        name: str | None = None,
        cwd: str | None = None,
        claude_session_id: str | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            state = self.load()
            now = _now_ms()
            session: dict[str, Any] = {
                "id": generate_id(),
                "name": str(name or "").strip() or f"Chat {len(state['sessions']) + 1}",
                "cwd": str(cwd or "").strip() or str(self.config.home_dir),
                "createdAt": now,
                "lastMessageAt": now,
                "isProcessing": False,
            }
            if claude_session_id:
                session["claudeSessionId"] = str(claude_session_id)
            state["sessions"].append(session)
            self.save(state)
        LOGGER.info("Created session %s (%s) cwd=%s", session["id"], session["name"], session["cwd"])
        return session

    def update_session(self, session_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            state = self.load()
            resolved = self.resolve_id(session_id)
            for session in state["sessions"]:
                if session["id"] != resolved:
                    continue
                for key, value in patch.items():
                    if key == "id":
                        continue
                    session[key] = value
                self.save(state)
                return dict(session)
        LOGGER.debug("Session update ignored for missing session=%s", session_id)
        return None

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            state = self.load()
            resolved = self.resolve_id(session_id)
            remaining = [session for session in state["sessions"] if session["id"] != resolved]
            removed = len(remaining) != len(state["sessions"])
            state["sessions"] = remaining
            state["aliases"] = {
                key: value for key, value in state["aliases"].items() if value != resolved and key != resolved
            }
            self.save(state)
            self.delete_messages(resolved)
        return removed

    def rekey_session(self, old_id: str, new_id: str) -> dict[str, Any]:
        """Move a session, its transcript and alias chain from ``old_id`` to ``new_id``."""
        if not is_safe_id(new_id):
            raise HTTPException(status_code=400, detail="Invalid session id.")
        with self._lock:
            state = self.load()
            resolved = self.resolve_id(old_id)
            session = next((item for item in state["sessions"] if item["id"] == resolved), None)
            if session is None:
                raise HTTPException(status_code=404, detail="Session not found.")
            if resolved == new_id:
                return dict(session)
            if any(item["id"] == new_id for item in state["sessions"]):
                raise HTTPException(status_code=409, detail="Target session id already exists.")

            session["id"] = new_id
            aliases = {key: (new_id if value == resolved else value) for key, value in state["aliases"].items()}
            aliases.pop(new_id, None)
            aliases[resolved] = new_id
            state["aliases"] = aliases

            old_file = self.messages_file(resolved)
            if old_file.exists():
                old_file.replace(self.messages_file(new_id))
            self.save(state)
        LOGGER.info("Rekeyed session %s -> %s", resolved, new_id)
        return dict(session)

    def messages_file(self, session_id: str) -> Path:
        return self.messages_dir / f"{session_id}.json"

    def load_messages(self, session_id: str) -> list[dict[str, Any]]:
        with self._lock:
            path = self.messages_file(self.resolve_id(session_id))
            if not path.exists():
                return []
            try:
                loaded = json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                LOGGER.warning("Unreadable transcript %s; treating as empty.", path)
                return []
        if not isinstance(loaded, list):
            return []
        return [message for message in map(_normalize_message, loaded) if message]

    def save_messages(self, session_id: str, messages: list[dict[str, Any]]) -> None:
        with self._lock:
            path = self.messages_file(self.resolve_id(session_id))
            tmp_file = path.with_suffix(".json.tmp")
            with tmp_file.open("w", encoding="utf-8") as fp:
                json.dump(messages, fp, indent=2)
            tmp_file.replace(path)

    def save_message(self, session_id: str, message: dict[str, Any]) -> None:
        with self._lock:
            messages = self.load_messages(session_id)
            messages.append(message)
            self.save_messages(session_id, messages)

    def delete_messages(self, session_id: str) -> None:
        path = self.messages_file(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.warning("Failed to delete transcript %s: %s", path, exc)


def detect_image_format(header: bytes) -> tuple[str, str] | None:
    """Return ``(extension, media type)`` for PNG, JPEG, GIF or WebP headers."""
    if len(header) >= 8 and header[:4] == b"\x89PNG":
        return "png", "image/png"
    if len(header) >= 3 and header[:3] == b"\xff\xd8\xff":
        return "jpg", "image/jpeg"
    if len(header) >= 4 and header[:4] == b"GIF8":
        return "gif", "image/gif"
    if len(header) >= 12 and header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return "webp", "image/webp"
    return None


class UploadStore:
    def __init__(self, config: HubConfig):
        self.uploads_dir = config.uploads_dir
        self.uploads_dir.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: str) -> Path:
        if not is_safe_id(session_id):
            raise HTTPException(status_code=400, detail="Invalid session ID.")
        return self.uploads_dir / session_id

    def save_image(self, session_id: str, content: bytes) -> dict[str, str]:
        image_format = detect_image_format(content[:IMAGE_SNIFF_BYTES])
        if image_format is None:
            raise HTTPException(status_code=400, detail="Unsupported or invalid image format.")
        ext, media_type = image_format
        target_dir = self.session_dir(session_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        image_id = generate_id()
        filename = f"{image_id}.{ext}"
        (target_dir / filename).write_bytes(content)
        LOGGER.debug("Stored upload session=%s file=%s bytes=%d", session_id, filename, len(content))
        return {
            "id": image_id,
            "filename": filename,
            "mediaType": media_type,
            "url": f"/api/uploads/{session_id}/{filename}",
        }

    def image_path(self, session_id: str, filename: str) -> Path:
        if not SAFE_FILENAME_RE.match(str(filename or "")) or filename in {".", ".."}:
            raise HTTPException(status_code=400, detail="Invalid parameters.")
        path = self.session_dir(session_id) / filename
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Image not found.")
        return path

    def read_image_bytes(self, session_id: str, filename: str) -> bytes:
        return self.image_path(session_id, filename).read_bytes()

    @staticmethod
    def content_type(filename: str) -> str:
        return UPLOAD_CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")

    def rekey(self, old_id: str, new_id: str) -> None:
        old_dir = self.uploads_dir / old_id
        if not old_dir.is_dir():
            return
        new_dir = self.session_dir(new_id)
        if new_dir.exists():
            for child in old_dir.iterdir():
                child.replace(new_dir / child.name)
            old_dir.rmdir()
            return
        old_dir.replace(new_dir)

    def delete_session(self, session_id: str) -> None:
        if not is_safe_id(session_id):
            return
        path = self.uploads_dir / session_id
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)


def _normalize_sprite(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None
    sprite_id = str(raw.get("id") or "").strip()
    if not sprite_id:
        return None
    sprite: dict[str, Any] = {
        "id": sprite_id,
        "name": str(raw.get("name") or ""),
        "address": str(raw.get("address") or ""),
        "port": _coerce_int(raw.get("port"), DEFAULT_SPRITE_PORT),
        "createdAt": _coerce_int(raw.get("createdAt"), _now_ms()),
    }
    if raw.get("publicUrl") is not None:
        sprite["publicUrl"] = str(raw.get("publicUrl"))
    return sprite


class SpriteStore:
    """Address book of other sprites, kept in ``sprites.json``."""

    def __init__(self, config: HubConfig):
        self.sprites_file = config.sprites_file
        self._lock = RLock()
        self.sprites_file.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> list[dict[str, Any]]:
        with self._lock:
            if not self.sprites_file.exists():
                return []
            try:
                loaded = json.loads(self.sprites_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                LOGGER.warning("Unreadable sprites file %s; starting empty.", self.sprites_file)
                return []
        if not isinstance(loaded, list):
            return []
        return [sprite for sprite in map(_normalize_sprite, loaded) if sprite]

    def save(self, sprites: list[dict[str, Any]]) -> None:
        with self._lock:
            tmp_file = self.sprites_file.with_suffix(".json.tmp")
            with tmp_file.open("w", encoding="utf-8") as fp:
                json.dump(sprites, fp, indent=2)
            tmp_file.replace(self.sprites_file)

    def list_sprites(self) -> list[dict[str, Any]]:
        return sorted(self.load(), key=lambda item: item["createdAt"], reverse=True)

    def create_sprite(
        self,
        name: str | None,
        address: str | None,
        port: int | None = None,
        public_url: str | None = None,
    ) -> dict[str, Any]:
        if not name or not address:
            raise HTTPException(status_code=400, detail="Name and address required.")
        sprite: dict[str, Any] = {
            "id": generate_id(),
            "name": name,
            "address": address,
            "port": int(port or DEFAULT_SPRITE_PORT),
            "createdAt": _now_ms(),
        }
        if public_url is not None:
            sprite["publicUrl"] = public_url
        with self._lock:
            sprites = self.load()
            sprites.append(sprite)
            self.save(sprites)
        LOGGER.info("Added sprite %s (%s:%s)", sprite["name"], sprite["address"], sprite["port"])
        return sprite

    def update_sprite(self, sprite_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            sprites = self.load()
            sprite = next((item for item in sprites if item["id"] == sprite_id), None)
            if sprite is None:
                raise HTTPException(status_code=404, detail="Sprite not found.")
            for key in ("name", "address", "port"):
                if patch.get(key):
                    sprite[key] = patch[key]
            if "publicUrl" in patch:
                sprite["publicUrl"] = patch["publicUrl"]
            self.save(sprites)
        return dict(sprite)

    def delete_sprite(self, sprite_id: str) -> bool:
        with self._lock:
            sprites = self.load()
            remaining = [item for item in sprites if item["id"] != sprite_id]
            self.save(remaining)
        return len(remaining) != len(sprites)
