"""HTTP + SSE server for the threadloom engine.

Exposes projects, locations, threads, sessions and project commands as a
JSON REST API, with Server-Sent Events streams per thread, per command
and per git location.

Usage:
    threadloom [--host HOST] [--port PORT]
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

from threadloom.adapters.event_bus import Subscription
from threadloom.adapters.events import event_to_dict
from threadloom.engine.commands import CommandProcess
from threadloom.engine.engine import ThreadEngine
from threadloom.engine.errors import (
    AlreadyRunningError,
    ConfigError,
    EngineError,
    IncompleteAnswerError,
    InvalidStateError,
    NotFoundError,
    NotRunningError,
    ParseDesyncError,
    ProcessError,
    QuestionPendingError,
    RemoteConnectionError,
    SessionImportError,
)
from threadloom.engine.models import SendOptions, to_payload

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 30.0

# Most specific first; the first isinstance match wins.
ERROR_STATUS: list[tuple[type[EngineError], int, str]] = [
    (NotFoundError, 404, "NotFoundError"),
    (RemoteConnectionError, 502, "ConnectionError"),
    (AlreadyRunningError, 409, "AlreadyRunningError"),
    (NotRunningError, 409, "NotRunningError"),
    (QuestionPendingError, 409, "QuestionPendingError"),
    (InvalidStateError, 409, "InvalidStateError"),
    (IncompleteAnswerError, 400, "IncompleteAnswerError"),
    (SessionImportError, 422, "ImportError"),
    (ParseDesyncError, 500, "ParseDesyncError"),
    (ProcessError, 500, "ProcessError"),
    (ConfigError, 400, "ConfigError"),
]


class BadRequest(Exception):
    """Malformed request body or parameters."""


def error_status(exc: EngineError) -> tuple[int, str]:
    for cls, status, kind in ERROR_STATUS:
        if isinstance(exc, cls):
            return status, kind
    return 500, type(exc).__name__


def _command_payload(instance: CommandProcess | None, command_id: str) -> dict[str, Any]:
    if instance is None:
        return {"command_id": command_id, "location_id": None, "status": "idle", "exit_code": None, "pid": None}
    return {
        "command_id": instance.command_id,
        "location_id": instance.location_id,
        "status": instance.status.value,
        "exit_code": instance.exit_code,
        "pid": instance.pid,
    }


class LoomServer:
    """HTTP + SSE adapter over ThreadEngine.

    Thin adapter: all state lives in the engine. This class only handles
    HTTP routing, error mapping and SSE streaming.
    """

    def __init__(
        self,
        engine: ThreadEngine | None = None,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._engine = engine or ThreadEngine()
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._sse_clients = 0
        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._error_middleware,
        ])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def engine(self) -> ThreadEngine:
        return self._engine

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-loom-request-id", str(uuid.uuid4())[:8])
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

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except BadRequest as exc:
            return web.json_response({"error": str(exc), "kind": "BadRequest"}, status=400)
        except EngineError as exc:
            status, kind = error_status(exc)
            if status >= 500:
                logger.error("HTTP %s %s: %s", request.method, request.path, exc)
            else:
                logger.info("HTTP %s %s rejected: %s", request.method, request.path, exc)
            return web.json_response({"error": str(exc), "kind": kind}, status=status)
        except Exception as exc:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return web.json_response({"error": str(exc), "kind": type(exc).__name__}, status=500)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Projects + locations
        r.add_get("/projects", self._handle_list_projects)
        r.add_post("/projects", self._handle_create_project)
        r.add_patch("/projects/{project_id}", self._handle_update_project)
        r.add_delete("/projects/{project_id}", self._handle_delete_project)
        r.add_get("/projects/{project_id}/locations", self._handle_list_locations)
        r.add_post("/projects/{project_id}/locations", self._handle_create_location)
        r.add_patch("/locations/{location_id}", self._handle_update_location)
        r.add_delete("/locations/{location_id}", self._handle_delete_location)
        # Threads
        r.add_get("/projects/{project_id}/threads", self._handle_list_threads)
        r.add_post("/projects/{project_id}/threads", self._handle_create_thread)
        r.add_get("/threads/{thread_id}", self._handle_get_thread)
        r.add_patch("/threads/{thread_id}", self._handle_update_thread)
        r.add_delete("/threads/{thread_id}", self._handle_delete_thread)
        r.add_post("/threads/{thread_id}/start", self._handle_start_thread)
        r.add_post("/threads/{thread_id}/stop", self._handle_stop_thread)
        r.add_post("/threads/{thread_id}/send", self._handle_send)
        r.add_get("/threads/{thread_id}/messages", self._handle_list_messages)
        r.add_get("/threads/{thread_id}/events", self._handle_thread_events)
        # Plans + questions
        r.add_post("/threads/{thread_id}/plan/approve", self._handle_approve_plan)
        r.add_post("/threads/{thread_id}/plan/reject", self._handle_reject_plan)
        r.add_post("/threads/{thread_id}/plan/execute", self._handle_execute_plan)
        r.add_get("/threads/{thread_id}/questions", self._handle_get_questions)
        r.add_post("/threads/{thread_id}/questions/answer", self._handle_answer_questions)
        # Sessions + import
        r.add_get("/threads/{thread_id}/sessions", self._handle_list_sessions)
        r.add_post("/threads/{thread_id}/sessions", self._handle_create_session)
        r.add_post("/threads/{thread_id}/sessions/{session_id}/switch", self._handle_switch_session)
        r.add_get("/import/sessions", self._handle_import_list)
        r.add_post("/projects/{project_id}/import", self._handle_import_run)
        # Project commands
        r.add_get("/projects/{project_id}/commands", self._handle_list_commands)
        r.add_post("/projects/{project_id}/commands", self._handle_create_command)
        r.add_delete("/commands/{command_id}", self._handle_delete_command)
        r.add_post("/commands/{command_id}/start", self._handle_start_command)
        r.add_post("/commands/{command_id}/stop", self._handle_stop_command)
        r.add_post("/commands/{command_id}/restart", self._handle_restart_command)
        r.add_get("/commands/{command_id}/status", self._handle_command_status)
        r.add_get("/commands/{command_id}/logs", self._handle_command_logs)
        r.add_get("/commands/{command_id}/events", self._handle_command_events)
        # Connectivity + environment
        r.add_post("/ssh/test", self._handle_test_ssh)
        r.add_post("/wsl/test", self._handle_test_wsl)
        r.add_get("/wsl/distros", self._handle_list_distros)
        r.add_get("/locations/{location_id}/cli-health", self._handle_cli_health)
        r.add_get("/locations/{location_id}/git", self._handle_git_status)
        r.add_get("/locations/{location_id}/git/events", self._handle_git_events)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("threadloom server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("threadloom server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._engine.shutdown()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Request helpers ──

    @staticmethod
    async def _body(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise BadRequest(f"Invalid JSON body: {exc}") from exc
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise BadRequest("JSON body must be an object")
        return body

    @staticmethod
    def _require(body: dict[str, Any], key: str) -> Any:
        value = body.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise BadRequest(f"{key} is required")
        return value

    @staticmethod
    def _limit(request: web.Request, default: int = 50) -> int:
        raw = request.query.get("limit")
        if raw is None:
            return default
        try:
            limit = int(raw)
        except ValueError as exc:
            raise BadRequest("limit must be an integer") from exc
        if limit <= 0:
            raise BadRequest("limit must be > 0")
        return limit

    # ── SSE ──

    async def _stream(self, request: web.Request, subscription: Subscription, label: str) -> web.StreamResponse:
        """Relay a subscription as SSE until the client disconnects."""
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)
        self._sse_clients += 1
        logger.info(
            "SSE client connected to %s req=%s active_clients=%d",
            label, request.get("req_id", "unknown"), self._sse_clients,
        )
        try:
            await response.write(b"event: connected\ndata: {}\n\n")
            while True:
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if event is None:
                    break
                payload = event_to_dict(event)
                data = json.dumps(payload, default=str)
                await response.write(f"event: {payload['event']}\ndata: {data}\n\n".encode())
        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            subscription.close()
            self._sse_clients -= 1
            logger.info(
                "SSE client disconnected from %s req=%s active_clients=%d",
                label, request.get("req_id", "unknown"), self._sse_clients,
            )
        return response

    # ── HTTP handlers: health + projects ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        engine = self._engine
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "running_threads": len(engine.registry),
            "providers": engine.providers.list_names(),
            "available_providers": engine.providers.list_available(),
            "sse_clients": self._sse_clients,
        })

    async def _handle_list_projects(self, request: web.Request) -> web.Response:
        return web.json_response({"projects": to_payload(self._engine.list_projects())})

    async def _handle_create_project(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        project = self._engine.create_project(self._require(body, "name"), body.get("git_url"))
        return web.json_response(to_payload(project), status=201)

    async def _handle_update_project(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        project = self._engine.update_project(request.match_info["project_id"], **body)
        return web.json_response(to_payload(project))

    async def _handle_delete_project(self, request: web.Request) -> web.Response:
        await self._engine.delete_project(request.match_info["project_id"])
        return web.json_response({"status": "deleted"})

    async def _handle_list_locations(self, request: web.Request) -> web.Response:
        locations = self._engine.list_locations(request.match_info["project_id"])
        return web.json_response({"locations": to_payload(locations)})

    async def _handle_create_location(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        try:
            location = self._engine.create_location(
                request.match_info["project_id"],
                label=body.get("label") or "",
                path=self._require(body, "path"),
                connection_type=body.get("connection_type") or "local",
                ssh=body.get("ssh"),
                wsl=body.get("wsl"),
            )
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc
        return web.json_response(to_payload(location), status=201)

    async def _handle_update_location(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        try:
            location = self._engine.update_location(request.match_info["location_id"], **body)
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc
        return web.json_response(to_payload(location))

    async def _handle_delete_location(self, request: web.Request) -> web.Response:
        await self._engine.delete_location(request.match_info["location_id"])
        return web.json_response({"status": "deleted"})

    # ── HTTP handlers: threads ──

    async def _handle_list_threads(self, request: web.Request) -> web.Response:
        threads = self._engine.list_threads(request.match_info["project_id"])
        return web.json_response({"threads": to_payload(threads)})

    async def _handle_create_thread(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        thread = self._engine.create_thread(
            request.match_info["project_id"],
            self._require(body, "location_id"),
            name=body.get("name"),
            provider=body.get("provider"),
            model=body.get("model"),
            use_wsl=bool(body.get("use_wsl", False)),
            wsl_distro=body.get("wsl_distro"),
        )
        return web.json_response(to_payload(thread), status=201)

    async def _handle_get_thread(self, request: web.Request) -> web.Response:
        return web.json_response(to_payload(self._engine.get_thread(request.match_info["thread_id"])))

    async def _handle_update_thread(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        thread = self._engine.update_thread(request.match_info["thread_id"], **body)
        return web.json_response(to_payload(thread))

    async def _handle_delete_thread(self, request: web.Request) -> web.Response:
        await self._engine.delete_thread(request.match_info["thread_id"])
        return web.json_response({"status": "deleted"})

    async def _handle_start_thread(self, request: web.Request) -> web.Response:
        thread = await self._engine.start_thread(request.match_info["thread_id"])
        return web.json_response(to_payload(thread))

    async def _handle_stop_thread(self, request: web.Request) -> web.Response:
        thread = await self._engine.stop_thread(request.match_info["thread_id"])
        return web.json_response(to_payload(thread))

    async def _handle_send(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        content = self._require(body, "content")
        options = SendOptions(
            plan_mode=bool(body.get("plan_mode", False)),
            model=body.get("model") or None,
        )
        message = await self._engine.send(request.match_info["thread_id"], str(content), options)
        return web.json_response(to_payload(message), status=202)

    async def _handle_list_messages(self, request: web.Request) -> web.Response:
        messages = self._engine.list_messages(
            request.match_info["thread_id"], request.query.get("session_id") or None,
        )
        return web.json_response({"messages": to_payload(messages)})

    async def _handle_thread_events(self, request: web.Request) -> web.StreamResponse:
        thread_id = request.match_info["thread_id"]
        subscription = self._engine.subscribe(thread_id)
        return await self._stream(request, subscription, f"thread {thread_id}")

    # ── HTTP handlers: plans + questions ──

    async def _handle_approve_plan(self, request: web.Request) -> web.Response:
        thread = await self._engine.approve_plan(request.match_info["thread_id"])
        return web.json_response(to_payload(thread))

    async def _handle_reject_plan(self, request: web.Request) -> web.Response:
        thread = await self._engine.reject_plan(request.match_info["thread_id"])
        return web.json_response(to_payload(thread))

    async def _handle_execute_plan(self, request: web.Request) -> web.Response:
        session = await self._engine.execute_plan_in_new_context(request.match_info["thread_id"])
        return web.json_response(to_payload(session), status=201)

    async def _handle_get_questions(self, request: web.Request) -> web.Response:
        questions = self._engine.get_questions(request.match_info["thread_id"])
        return web.json_response({"questions": to_payload(questions)})

    async def _handle_answer_questions(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        answers = body.get("answers")
        if not isinstance(answers, dict):
            raise BadRequest("answers must be an object")
        message = await self._engine.answer_questions(
            request.match_info["thread_id"], {str(k): str(v) for k, v in answers.items()},
        )
        return web.json_response(to_payload(message))

    # ── HTTP handlers: sessions + import ──

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        thread_id = request.match_info["thread_id"]
        thread = self._engine.get_thread(thread_id)
        return web.json_response({
            "active_session_id": thread.active_session_id,
            "sessions": to_payload(self._engine.list_sessions(thread_id)),
        })

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        session = self._engine.create_session(request.match_info["thread_id"], body.get("name"))
        return web.json_response(to_payload(session), status=201)

    async def _handle_switch_session(self, request: web.Request) -> web.Response:
        thread = await self._engine.switch_session(
            request.match_info["thread_id"], request.match_info["session_id"],
        )
        return web.json_response(to_payload(thread))

    async def _handle_import_list(self, request: web.Request) -> web.Response:
        summaries = await asyncio.to_thread(self._engine.list_importable, self._limit(request))
        return web.json_response({"sessions": to_payload(summaries)})

    async def _handle_import_run(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        thread = self._engine.import_session(
            request.match_info["project_id"],
            self._require(body, "location_id"),
            self._require(body, "source_path"),
            session_id=body.get("session_id"),
            name=body.get("name"),
            provider=body.get("provider") or "claude",
        )
        return web.json_response(to_payload(thread), status=201)

    # ── HTTP handlers: project commands ──

    async def _handle_list_commands(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        location_id = request.query.get("location_id") or None
        commands = self._engine.list_commands(project_id)
        statuses = self._engine.commands.statuses(project_id, location_id)
        return web.json_response({
            "commands": [
                {**to_payload(c), "status": statuses[c.id].value} for c in commands
            ],
        })

    async def _handle_create_command(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        command = self._engine.create_command(
            request.match_info["project_id"],
            self._require(body, "name"),
            self._require(body, "command"),
            cwd=body.get("cwd"),
            shell=body.get("shell") or "default",
            sort_order=body.get("sort_order"),
        )
        return web.json_response(to_payload(command), status=201)

    async def _handle_delete_command(self, request: web.Request) -> web.Response:
        await self._engine.delete_command(request.match_info["command_id"])
        return web.json_response({"status": "deleted"})

    async def _command_body(self, request: web.Request) -> tuple[str, str | None]:
        body = await self._body(request)
        return request.match_info["command_id"], body.get("location_id") or request.query.get("location_id")

    async def _handle_start_command(self, request: web.Request) -> web.Response:
        command_id, location_id = await self._command_body(request)
        instance = await self._engine.start_command(command_id, location_id)
        return web.json_response(_command_payload(instance, command_id))

    async def _handle_stop_command(self, request: web.Request) -> web.Response:
        command_id, location_id = await self._command_body(request)
        instance = await self._engine.stop_command(command_id, location_id)
        return web.json_response(_command_payload(instance, command_id))

    async def _handle_restart_command(self, request: web.Request) -> web.Response:
        command_id, location_id = await self._command_body(request)
        instance = await self._engine.restart_command(command_id, location_id)
        return web.json_response(_command_payload(instance, command_id))

    async def _handle_command_status(self, request: web.Request) -> web.Response:
        command_id = request.match_info["command_id"]
        instance = self._engine.commands.get_instance(command_id, request.query.get("location_id") or None)
        return web.json_response(_command_payload(instance, command_id))

    async def _handle_command_logs(self, request: web.Request) -> web.Response:
        logs = self._engine.command_logs(
            request.match_info["command_id"], request.query.get("location_id") or None,
        )
        return web.json_response({"logs": to_payload(logs)})

    async def _handle_command_events(self, request: web.Request) -> web.StreamResponse:
        command_id = request.match_info["command_id"]
        subscription = self._engine.subscribe_command(command_id)
        return await self._stream(request, subscription, f"command {command_id}")

    # ── HTTP handlers: connectivity + git ──

    async def _handle_test_ssh(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        result = await self._engine.test_ssh({
            "host": self._require(body, "host"),
            "user": self._require(body, "user"),
            "port": body.get("port"),
            "key_path": body.get("key_path"),
        })
        return web.json_response(to_payload(result))

    async def _handle_test_wsl(self, request: web.Request) -> web.Response:
        body = await self._body(request)
        result = await self._engine.test_wsl(str(self._require(body, "distro")))
        return web.json_response(to_payload(result))

    async def _handle_list_distros(self, request: web.Request) -> web.Response:
        return web.json_response({"distros": await self._engine.list_distros()})

    async def _handle_cli_health(self, request: web.Request) -> web.Response:
        health = await self._engine.cli_health(
            request.match_info["location_id"], request.query.get("provider") or None,
        )
        return web.json_response(to_payload(health))

    async def _handle_git_status(self, request: web.Request) -> web.Response:
        status = await self._engine.git_status(request.match_info["location_id"])
        return web.json_response(to_payload(status))

    async def _handle_git_events(self, request: web.Request) -> web.StreamResponse:
        location_id = request.match_info["location_id"]
        subscription = self._engine.subscribe_git(location_id)
        try:
            return await self._stream(request, subscription, f"git {location_id}")
        finally:
            self._engine.unsubscribe_git(subscription)
