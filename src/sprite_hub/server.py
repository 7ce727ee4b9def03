from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import socket
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from sprite_hub.cli_sessions import discover_claude_sessions
from sprite_hub.config import (
    DEFAULT_CLAUDE_COMMAND,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_REAP_INTERVAL_SECONDS,
    DEFAULT_STALE_AFTER_SECONDS,
    HUB_LOG_LEVEL_CHOICES,
    HubConfig,
    _default_data_dir,
    _default_public_dir,
)
from sprite_hub.events import InterruptRequest, UnknownRequest, UserTurn, decode_client_message
from sprite_hub.gateway import ConnectionGateway
from sprite_hub.reaper import IdleReaper
from sprite_hub.registry import ClientConnection, SessionRegistry
from sprite_hub.store import MessageStore, SpriteStore, UploadStore
from sprite_hub.supervisor import ProcessSupervisor

load_dotenv()

LOGGER = logging.getLogger("sprite_hub")
LOGGER.addHandler(logging.NullHandler())

CLIENT_POLL_SECONDS = 0.25
WS_CLOSE_MISSING_SESSION = 4400
WS_CLOSE_UNKNOWN_SESSION = 4404
CORS_METHODS = ["GET", "POST", "PATCH", "DELETE", "OPTIONS"]


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in HUB_LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def _configure_hub_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def _uvicorn_log_level(hub_level: str) -> str:
    normalized = _normalize_log_level(hub_level)
    if normalized == "debug":
        return "info"
    return normalized


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload.")
    return payload


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{key} must be a string.")
    return value.strip() or None


def _optional_port(payload: dict[str, Any]) -> int | None:
    value = payload.get("port")
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail="port must be an integer.")
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="port must be an integer.") from exc
    if not 0 < port < 65536:
        raise HTTPException(status_code=400, detail="port must be between 1 and 65535.")
    return port


def create_app(
    config: HubConfig,
    public_dir: Path | None = None,
    supervisor: ProcessSupervisor | None = None,
) -> FastAPI:
    store = MessageStore(config)
    uploads = UploadStore(config)
    sprites = SpriteStore(config)
    registry = SessionRegistry()
    gateway = ConnectionGateway(config, store, uploads, registry, supervisor or ProcessSupervisor(config))
    reaper = IdleReaper(
        registry,
        store,
        gateway.supervisor,
        gateway.lifecycle_lock,
        stale_after_seconds=config.stale_after_seconds,
        interval_seconds=config.reap_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reaper.start()
        try:
            yield
        finally:
            reaper.stop()
            closed = gateway.shutdown()
            if closed:
                LOGGER.info("Shutdown cleanup completed: closed_sessions=%d", closed)

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=CORS_METHODS,
        allow_headers=["Content-Type"],
    )
    app.state.gateway = gateway
    app.state.reaper = reaper
    app.state.sprites = sprites

    @app.get("/api/config")
    def api_config() -> dict[str, Any]:
        return {"publicUrl": os.environ.get("SPRITE_PUBLIC_URL", ""), "spriteName": socket.gethostname()}

    @app.get("/api/sessions")
    def api_sessions() -> list[dict[str, Any]]:
        return gateway.list_sessions()

    @app.post("/api/sessions")
    async def api_create_session(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        return await asyncio.to_thread(
            gateway.create_session,
            _optional_str(payload, "name"),
            _optional_str(payload, "cwd"),
            _optional_str(payload, "claudeSessionId"),
        )

    @app.patch("/api/sessions/{session_id}")
    async def api_update_session(session_id: str, request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        patch = {"name": _optional_str(payload, "name"), "cwd": _optional_str(payload, "cwd")}
        return await asyncio.to_thread(gateway.update_session, session_id, patch)

    @app.delete("/api/sessions/{session_id}", status_code=204)
    def api_delete_session(session_id: str) -> Response:
        gateway.delete_session(session_id)
        return Response(status_code=204)

    @app.get("/api/sessions/{session_id}/messages")
    def api_session_messages(session_id: str) -> list[dict[str, Any]]:
        session = store.require_session(session_id)
        return store.load_messages(session["id"])

    @app.post("/api/sessions/{session_id}/regenerate-title")
    def api_regenerate_title(session_id: str) -> dict[str, Any]:
        return gateway.regenerate_title(session_id)

    @app.post("/api/sessions/{session_id}/update-id")
    async def api_update_session_id(session_id: str, request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        new_id = _optional_str(payload, "newId")
        if not new_id:
            raise HTTPException(status_code=400, detail="newId is required.")

        def rekey() -> str:
            old_id = store.require_session(session_id)["id"]
            gateway.rekey_session(old_id, new_id)
            return old_id

        old_id = await asyncio.to_thread(rekey)
        return {"success": True, "oldId": old_id, "newId": new_id}

    @app.post("/api/sessions/{session_id}/update-message")
    async def api_update_message(session_id: str, request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        role = payload.get("role")
        content = payload.get("content")
        if role not in {"user", "assistant"} or not isinstance(content, str) or not content:
            raise HTTPException(status_code=400, detail="Missing role or content.")
        await asyncio.to_thread(gateway.update_message_preview, session_id, content)
        return {"success": True}

    @app.get("/api/claude-sessions")
    def api_claude_sessions() -> list[dict[str, Any]]:
        return discover_claude_sessions(config.claude_projects_dir)

    @app.get("/api/sprites")
    def api_sprites() -> list[dict[str, Any]]:
        return sprites.list_sprites()

    @app.post("/api/sprites")
    async def api_create_sprite(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        return await asyncio.to_thread(
            sprites.create_sprite,
            _optional_str(payload, "name"),
            _optional_str(payload, "address"),
            _optional_port(payload),
            _optional_str(payload, "publicUrl"),
        )

    @app.patch("/api/sprites/{sprite_id}")
    async def api_update_sprite(sprite_id: str, request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        patch: dict[str, Any] = {
            "name": _optional_str(payload, "name"),
            "address": _optional_str(payload, "address"),
            "port": _optional_port(payload),
        }
        if "publicUrl" in payload:
            patch["publicUrl"] = _optional_str(payload, "publicUrl")
        return await asyncio.to_thread(sprites.update_sprite, sprite_id, patch)

    @app.delete("/api/sprites/{sprite_id}", status_code=204)
    def api_delete_sprite(sprite_id: str) -> Response:
        sprites.delete_sprite(sprite_id)
        return Response(status_code=204)

    @app.post("/api/upload")
    async def api_upload(session: str, file: UploadFile = File(...)) -> dict[str, str]:
        content = await file.read()
        if not content:
            raise HTTPException(status_code=400, detail="No file provided.")

        def save() -> dict[str, str]:
            resolved = store.require_session(session)["id"]
            return uploads.save_image(resolved, content)

        return await asyncio.to_thread(save)

    @app.get("/api/uploads/{session_id}/{filename}")
    def api_upload_file(session_id: str, filename: str) -> FileResponse:
        resolved = store.resolve_id(session_id)
        path = uploads.image_path(resolved, filename)
        return FileResponse(path, media_type=uploads.content_type(filename))

    @app.websocket("/ws/keepalive")
    async def ws_keepalive(websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass

    @app.websocket("/ws")
    async def ws_session(websocket: WebSocket) -> None:
        session_id = websocket.query_params.get("session")
        if not session_id:
            await websocket.close(code=WS_CLOSE_MISSING_SESSION)
            return

        await websocket.accept()
        try:
            client = await asyncio.to_thread(gateway.connect, session_id)
        except HTTPException as exc:
            await websocket.send_text(json.dumps({"type": "error", "message": str(exc.detail)}))
            await websocket.close(code=WS_CLOSE_UNKNOWN_SESSION if exc.status_code == 404 else 1011)
            return

        async def stream_events(listener: ClientConnection) -> None:
            while True:
                try:
                    event = await asyncio.to_thread(listener.queue.get, True, CLIENT_POLL_SECONDS)
                except queue.Empty:
                    continue
                if event is None:
                    break
                await websocket.send_text(json.dumps(event))

        async def consume_input(listener: ClientConnection) -> None:
            while True:
                message = await websocket.receive_text()
                request = decode_client_message(message)
                try:
                    if isinstance(request, UserTurn):
                        await asyncio.to_thread(gateway.submit_turn, listener, request)
                    elif isinstance(request, InterruptRequest):
                        await asyncio.to_thread(gateway.interrupt, listener)
                    elif isinstance(request, UnknownRequest):
                        LOGGER.debug("Ignoring client message on session %s: %s", listener.session_id, request.reason)
                except HTTPException as exc:
                    listener.send({"type": "error", "message": str(exc.detail)})

        sender = asyncio.create_task(stream_events(client))
        receiver = asyncio.create_task(consume_input(client))
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc and not isinstance(exc, WebSocketDisconnect):
                    raise exc
        except WebSocketDisconnect:
            pass
        finally:
            gateway.disconnect(client)
            if not sender.done():
                sender.cancel()
            if not receiver.done():
                receiver.cancel()

    if public_dir is not None and Path(public_dir).is_dir():
        app.mount("/", StaticFiles(directory=str(public_dir), html=True), name="public")

    return app


@click.command(help="Serve the sprite chat hub.")
@click.option("--data-dir", default=os.environ.get("SPRITE_HUB_DATA_DIR") or str(_default_data_dir()), show_default=True, type=click.Path(file_okay=False, path_type=Path), help="Directory for sessions, transcripts and uploads.")
@click.option("--host", default=os.environ.get("SPRITE_HUB_HOST", DEFAULT_HOST), show_default=True)
@click.option("--port", default=int(os.environ.get("PORT") or DEFAULT_PORT), show_default=True, type=int)
@click.option("--claude-command", default=os.environ.get("SPRITE_HUB_CLAUDE_COMMAND", DEFAULT_CLAUDE_COMMAND), show_default=True, help="Assistant CLI executable.")
@click.option("--stale-after", default=float(os.environ.get("SPRITE_HUB_STALE_AFTER_SECONDS") or DEFAULT_STALE_AFTER_SECONDS), show_default=True, type=float, help="Seconds an unwatched assistant process may live.")
@click.option("--reap-interval", default=float(os.environ.get("SPRITE_HUB_REAP_INTERVAL_SECONDS") or DEFAULT_REAP_INTERVAL_SECONDS), show_default=True, type=float, help="Seconds between idle sweeps.")
@click.option("--public-dir", default=os.environ.get("SPRITE_HUB_PUBLIC_DIR") or str(_default_public_dir()), show_default=True, type=click.Path(file_okay=False, path_type=Path), help="Static client assets served at /.")
@click.option(
    "--log-level",
    default=os.environ.get("SPRITE_HUB_LOG_LEVEL", "info"),
    show_default=True,
    type=click.Choice(HUB_LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Hub logging verbosity (applies to hub logs and Uvicorn).",
)
def main(
    data_dir: Path,
    host: str,
    port: int,
    claude_command: str,
    stale_after: float,
    reap_interval: float,
    public_dir: Path,
    log_level: str,
) -> None:
    normalized_log_level = _normalize_log_level(log_level)
    _configure_hub_logging(normalized_log_level)
    LOGGER.info("Starting sprite hub host=%s port=%s data_dir=%s log_level=%s", host, port, data_dir, normalized_log_level)
    if stale_after <= 0:
        raise click.BadParameter("must be positive", param_hint="--stale-after")
    if reap_interval <= 0:
        raise click.BadParameter("must be positive", param_hint="--reap-interval")

    config = HubConfig(
        data_dir=data_dir,
        claude_command=claude_command,
        stale_after_seconds=stale_after,
        reap_interval_seconds=reap_interval,
    )
    if not Path(public_dir).is_dir():
        LOGGER.warning("Public directory %s not found; static client disabled.", public_dir)
    app = create_app(config, public_dir=public_dir)
    uvicorn.run(app, host=host, port=port, log_level=_uvicorn_log_level(normalized_log_level))


if __name__ == "__main__":
    main()
