"""HTTP + SSE server for the session engine.

Exposes the session registry as a REST API, with Server-Sent Events for
lifecycle changes (all sessions) and for one session's live output.

Usage:
    ronboard [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from ronboard.adapters.events import SessionEvent, event_to_dict
from ronboard.engine.config import RonboardConfig
from ronboard.engine.errors import (
    DirectoryNotFoundError,
    RonboardError,
    SessionNotFoundError,
)
from ronboard.engine.models import SessionMode
from ronboard.engine.registry import SessionRegistry
from ronboard.shared.services.persistence import FileHistoryStore
from ronboard.shared.services.session_naming import AutoNamer

logger = logging.getLogger(__name__)

_SSE_KEEPALIVE_SECONDS = 30.0


def format_sse(event: str, data: Any) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode()


def _not_found(session_id: str) -> web.Response:
    return web.json_response({"error": f"Session {session_id} not found"}, status=404)


class RonboardServer:
    """aiohttp application wrapping one SessionRegistry."""

    def __init__(
        self,
        config: RonboardConfig,
        registry: SessionRegistry | None = None,
    ) -> None:
        self._config = config
        self._registry = registry or SessionRegistry(
            config, FileHistoryStore(config.data_dir),
        )
        self._namer = AutoNamer(self._registry, config)
        self._host = config.host
        self._port = config.port
        self._started_at = time.time()
        self._sse_tasks: set[asyncio.Task] = set()

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_shutdown.append(self._on_shutdown)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-ronboard-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/api/events", self._handle_events)
        # Session CRUD
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_post("/api/sessions", self._handle_create_session)
        r.add_get("/api/sessions/{id}", self._handle_get_session)
        r.add_delete("/api/sessions/{id}", self._handle_remove_session)
        r.add_patch("/api/sessions/{id}/name", self._handle_rename_session)
        # Lifecycle
        r.add_post("/api/sessions/{id}/resume", self._handle_resume_session)
        r.add_post("/api/sessions/{id}/stop", self._handle_stop_session)
        # I/O
        r.add_get("/api/sessions/{id}/content", self._handle_get_content)
        r.add_post("/api/sessions/{id}/input", self._handle_send_input)
        r.add_post("/api/sessions/{id}/message", self._handle_send_message)
        r.add_get("/api/sessions/{id}/events", self._handle_session_events)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        await self._registry.initialize()
        if self._config.naming_enabled:
            self._namer.attach()

    async def _on_shutdown(self, app: web.Application) -> None:
        # Open event streams never finish on their own.
        for task in list(self._sse_tasks):
            task.cancel()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._namer.close()
        await self._registry.shutdown()
        self._registry.bus.close()

    async def start(self) -> None:
        """Serve until cancelled, then stop every session."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("Ronboard server listening on %s:%d", self._host, self._port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    # ── Helpers ──

    @staticmethod
    async def _read_body(request: web.Request) -> tuple[dict[str, Any], web.Response | None]:
        if not request.can_read_body:
            return {}, None
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}, web.json_response({"error": "Request body must be JSON"}, status=400)
        if not isinstance(body, dict):
            return {}, web.json_response({"error": "Request body must be a JSON object"}, status=400)
        return body, None

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        sessions = self._registry.list_all()
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "sessions": len(sessions),
            "live_sessions": sum(1 for s in sessions if s.is_running),
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        sessions = sorted(self._registry.list_all(), key=lambda s: s.last_used_at, reverse=True)
        return web.json_response({"sessions": [s.to_public_dict() for s in sessions]})

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        session = self._registry.get(session_id)
        if session is None:
            return _not_found(session_id)
        return web.json_response(session.to_public_dict())

    async def _handle_get_content(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        session = self._registry.get(session_id)
        if session is None:
            return _not_found(session_id)
        return web.json_response(self._history_payload(session_id, session.mode))

    def _history_payload(self, session_id: str, mode: SessionMode) -> dict[str, Any]:
        if mode == SessionMode.STREAM:
            return {
                "session_id": session_id,
                "mode": mode.value,
                "messages": [m.to_dict() for m in self._registry.get_stream_history(session_id)],
            }
        return {
            "session_id": session_id,
            "mode": mode.value,
            "content": self._registry.get_terminal_history(session_id),
        }

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body, err = await self._read_body(request)
        if err:
            return err
        working_directory = body.get("working_directory")
        if not isinstance(working_directory, str) or not working_directory.strip():
            return web.json_response({"error": "working_directory is required"}, status=400)
        name = body.get("name")
        model = body.get("model")
        raw_mode = body.get("mode")
        if raw_mode is not None and not isinstance(raw_mode, str):
            return web.json_response({"error": "mode must be a string"}, status=400)
        try:
            mode = SessionMode.parse(raw_mode)
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        session = await self._registry.create(
            name=name if isinstance(name, str) else None,
            working_directory=working_directory,
            mode=mode,
            model=model if isinstance(model, str) else None,
        )
        return web.json_response(session.to_public_dict(), status=201)

    async def _handle_resume_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            session = await self._registry.resume(session_id)
        except SessionNotFoundError:
            return _not_found(session_id)
        except DirectoryNotFoundError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except RonboardError as exc:
            return web.json_response({"error": str(exc)}, status=500)
        return web.json_response(session.to_public_dict())

    async def _handle_rename_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body, err = await self._read_body(request)
        if err:
            return err
        name = body.get("name")
        if not isinstance(name, str) or not name.strip():
            return web.json_response({"error": "Name is required"}, status=400)
        try:
            session = await self._registry.rename(session_id, name)
        except SessionNotFoundError:
            return _not_found(session_id)
        return web.json_response({"session_id": session.id, "name": session.name})

    async def _handle_stop_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if not await self._registry.stop(session_id):
            return _not_found(session_id)
        return web.json_response({"status": "stopped"})

    async def _handle_remove_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if not await self._registry.remove(session_id):
            return _not_found(session_id)
        return web.json_response({"status": "removed"})

    async def _handle_send_input(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body, err = await self._read_body(request)
        if err:
            return err
        data = body.get("data")
        if not isinstance(data, str):
            return web.json_response({"error": "data must be a string"}, status=400)
        try:
            delivered = await self._registry.send_input(session_id, data)
        except SessionNotFoundError:
            return _not_found(session_id)
        return web.json_response({"delivered": delivered})

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body, err = await self._read_body(request)
        if err:
            return err
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            return web.json_response({"error": "message is required"}, status=400)
        try:
            delivered = await self._registry.send_message(session_id, message)
        except SessionNotFoundError:
            return _not_found(session_id)
        return web.json_response({"delivered": delivered})

    # ── SSE ──

    async def _handle_events(self, request: web.Request) -> web.StreamResponse:
        """Lifecycle events for every session."""
        return await self._stream_events(request, group=None, first=format_sse(
            "connected", {"sessions": [s.id for s in self._registry.list_all()]},
        ))

    async def _handle_session_events(self, request: web.Request) -> web.StreamResponse:
        """History snapshot of one session, then its live events."""
        session_id = request.match_info["id"]
        session = self._registry.get(session_id)
        if session is None:
            return _not_found(session_id)
        return await self._stream_events(request, group=session_id, first=None, mode=session.mode)

    async def _stream_events(
        self,
        request: web.Request,
        group: str | None,
        first: bytes | None,
        mode: SessionMode | None = None,
    ) -> web.StreamResponse:
        bus = self._registry.bus
        # Subscribe and snapshot with no await in between, so no unit
        # is both in the snapshot and on the queue, and none is missed.
        queue: asyncio.Queue[SessionEvent] = bus.subscribe(group)
        if group is not None and mode is not None:
            first = format_sse("history", self._history_payload(group, mode))

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        req_id = request.get("req_id", "unknown")
        task = asyncio.current_task()
        if task is not None:
            self._sse_tasks.add(task)
        logger.info(
            "SSE client connected req=%s group=%s subscribers=%d",
            req_id, group, bus.subscriber_count,
        )
        try:
            await response.prepare(request)
            if first is not None:
                await response.write(first)
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_SSE_KEEPALIVE_SECONDS)
                    await response.write(format_sse(event.event_type, event_to_dict(event)))
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            bus.unsubscribe(queue)
            self._sse_tasks.discard(task)
            logger.info(
                "SSE client disconnected req=%s group=%s subscribers=%d",
                req_id, group, bus.subscriber_count,
            )
        return response
