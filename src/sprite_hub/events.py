"""Decoding of the assistant CLI's stream-json output and of client frames.

Each stdout line decodes to exactly one variant. Lines that are not JSON objects
become ``MalformedEvent`` so the reader loop can drop them explicitly.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class InitEvent:
    session_id: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssistantEvent:
    text: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResultEvent:
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OtherEvent:
    event_type: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MalformedEvent:
    line: str
    reason: str


AssistantStreamEvent = Union[InitEvent, AssistantEvent, ResultEvent, OtherEvent, MalformedEvent]


def _assistant_text(message: Any) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        str(block.get("text") or "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
    ]
    return "".join(parts)


def decode_event(line: str) -> AssistantStreamEvent:
    text = str(line or "").strip()
    if not text:
        return MalformedEvent(line=text, reason="empty line")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        return MalformedEvent(line=text, reason=f"invalid json: {exc.msg}")
    if not isinstance(payload, dict):
        return MalformedEvent(line=text, reason="not an object")

    event_type = str(payload.get("type") or "")
    if event_type == "system" and payload.get("subtype") == "init":
        session_id = str(payload.get("session_id") or "").strip()
        if session_id:
            return InitEvent(session_id=session_id, raw=payload)
        return OtherEvent(event_type=event_type, raw=payload)
    if event_type == "assistant":
        return AssistantEvent(text=_assistant_text(payload.get("message")), raw=payload)
    if event_type == "result":
        return ResultEvent(raw=payload)
    return OtherEvent(event_type=event_type, raw=payload)


@dataclass(frozen=True)
class UserTurn:
    content: str = ""
    image_id: str = ""
    image_filename: str = ""
    image_media_type: str = ""

    @property
    def has_image(self) -> bool:
        return bool(self.image_id and self.image_filename and self.image_media_type)

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.image_id


@dataclass(frozen=True)
class InterruptRequest:
    pass


@dataclass(frozen=True)
class UnknownRequest:
    reason: str


ClientRequest = Union[UserTurn, InterruptRequest, UnknownRequest]


def decode_client_message(message: str) -> ClientRequest:
    try:
        payload = json.loads(message)
    except json.JSONDecodeError:
        return UnknownRequest(reason="invalid json")
    if not isinstance(payload, dict):
        return UnknownRequest(reason="not an object")
    message_type = str(payload.get("type") or "")
    if message_type == "interrupt":
        return InterruptRequest()
    if message_type == "user":
        return UserTurn(
            content=str(payload.get("content") or ""),
            image_id=str(payload.get("imageId") or ""),
            image_filename=str(payload.get("imageFilename") or ""),
            image_media_type=str(payload.get("imageMediaType") or ""),
        )
    return UnknownRequest(reason=f"unsupported type {message_type!r}")
