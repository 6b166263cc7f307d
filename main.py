"""
main.py
───────
Portfolio offline engine: FastAPI host application.

Every page request that is not a ``/sw/*`` control route is handed to the
active engine version, which classifies it, serves it through one of the
caching strategies and proxies to ``ENGINE_ORIGIN`` when it needs the
network.  Route handlers are intentionally thin:
  1. Validate input (pydantic bodies / helper functions).
  2. Delegate to the active (or waiting) engine.
  3. Return the ``{ok, data, error, ts}`` JSON envelope.

Lifespan: what happens at startup / shutdown
──────────────────────────────────────────────
Startup:
  1. Configure structured JSON logging.
  2. Open the SQLite database and create the schema.
  3. Build the shared pieces: cache storage, submission queue, HTTP fetcher,
     connectivity monitor, notifier, client registry.
  4. Probe the origin once to seed the online/offline state.
  5. Register ``ENGINE_CACHE_VERSION``.  The first registration installs and
     activates immediately; activation drains the queue once when online.
     An install failure is logged and the host keeps serving: every engine
     route answers 503 until a later ``POST /sw/update`` succeeds.

Shutdown:
  1. Stop every engine version (fallback timer, background revalidation).
  2. Close the HTTP client and the database.
"""

from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import ValidationError

from cache_store import CacheStorage
from config import Settings, load_settings
from connectivity import ConnectionMonitor
from control import parse_command
from database import Database
from engine import Engine
from errors import InstallError, QueueError, StorageError
from forms import FormSubmissionHandler
from lifecycle import ClientRegistry, Registration
from logging_config import configure_logging, get_logger
from models import APIResponse, ConnectivityEvent, FetchRequest, FormSubmission, UpdateRequest
from network import USER_AGENT, Fetcher
from notifications import Notifier
from offline_queue import SubmissionQueue, SubmissionRepository

logger = get_logger(__name__)

_PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# ──────────────────────────────────────────────────────────────────────────────
# Response helpers
# ──────────────────────────────────────────────────────────────────────────────

def _json_response(envelope: APIResponse, status_code: int = 200) -> Response:
    return Response(
        content=envelope.model_dump_json(),
        status_code=status_code,
        media_type="application/json",
    )


def _ok(data: Any = None, status_code: int = 200) -> Response:
    return _json_response(APIResponse.success(data), status_code)


def _bad(msg: str, status_code: int = 400) -> Response:
    return _json_response(APIResponse.failure(msg), status_code)


def _no_engine() -> Response:
    return _bad("No active engine version: installation has not succeeded.", 503)


# ──────────────────────────────────────────────────────────────────────────────
# Application factory
# ──────────────────────────────────────────────────────────────────────────────

def create_app(
    settings:  Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock:     Callable[[], float] = time.time,
    manifest:  Optional[dict[str, tuple[str, ...]]] = None,
) -> FastAPI:
    """
    Build the host application.

    ``transport`` replaces the network for every outbound call (tests pass an
    ``httpx.MockTransport``); ``clock`` and ``manifest`` are forwarded to each
    engine version.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # ── Startup ───────────────────────────────────────────────────────────
        configure_logging(settings.log_level)
        logger.info(
            "engine_host_starting",
            origin=settings.origin,
            version=settings.cache_version,
            background_sync=settings.background_sync_supported,
        )

        db = Database(settings.db_path)
        db.initialize()

        client = httpx.AsyncClient(
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        storage  = CacheStorage(db, clock=clock)
        queue    = SubmissionQueue(SubmissionRepository(db), clock=clock)
        fetcher  = Fetcher(client)
        monitor  = ConnectionMonitor(probe_url=settings.origin + "/", client=client, clock=clock)
        notifier = Notifier()
        clients  = ClientRegistry()

        def _factory(version: str) -> Engine:
            return Engine(
                version, settings, storage, queue, fetcher, monitor, notifier, clients,
                clock=clock, manifest=manifest,
            )

        registration = Registration(_factory)

        app.state.settings     = settings
        app.state.db           = db
        app.state.queue        = queue
        app.state.monitor      = monitor
        app.state.notifier     = notifier
        app.state.clients      = clients
        app.state.registration = registration
        app.state.forms        = FormSubmissionHandler(
            queue, notifier, backup_enabled=settings.backup_submissions,
        )

        await monitor.check()
        try:
            await registration.register(settings.cache_version)
        except InstallError as exc:
            logger.error("engine_install_failed", version=settings.cache_version, error=str(exc))

        # ── Hand off to the application ───────────────────────────────────────
        yield

        # ── Shutdown ──────────────────────────────────────────────────────────
        await registration.shutdown()
        await fetcher.aclose()
        db.close()
        logger.info("engine_host_shutdown")

    app = FastAPI(
        title="Portfolio Offline Engine",
        version="1.0.0",
        description=(
            "Request-interception caching layer with expiry, bounded eviction, "
            "versioned lifecycle and a durable offline form-submission queue."
        ),
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ──────────────────────────────────────────────────────────────────────────
    # Status
    # ──────────────────────────────────────────────────────────────────────────

    @app.get("/sw/status")
    async def status(request: Request) -> Response:
        registration: Registration = request.app.state.registration
        active, waiting = registration.active, registration.waiting
        try:
            queue_stats = (await request.app.state.queue.stats()).model_dump()
        except StorageError as exc:
            logger.warning("status_queue_stats_failed", error=str(exc))
            queue_stats = None
        return _ok({
            "active":  active.status() if active else None,
            "waiting": waiting.status() if waiting else None,
            "online":  request.app.state.monitor.is_online,
            "queue":   queue_stats,
            "clients": request.app.state.clients.snapshot(),
        })

    # ──────────────────────────────────────────────────────────────────────────
    # Control channel
    # ──────────────────────────────────────────────────────────────────────────

    @app.post("/sw/message")
    async def message(
        request: Request,
        target:  str = Query("active", pattern=r"^(active|waiting)$"),
    ) -> Response:
        registration: Registration = request.app.state.registration
        engine = registration.active if target == "active" else registration.waiting
        if engine is None:
            if target == "waiting":
                return _bad("No waiting engine version.", 404)
            return _no_engine()

        try:
            command = parse_command(await request.json())
        except json.JSONDecodeError:
            return _bad("Body must be a JSON object.", 400)
        except ValidationError as exc:
            return _bad(f"Invalid command: {exc.errors()[0]['msg']}", 422)

        return _ok(await engine.handle_message(command))

    @app.post("/sw/update")
    async def update(request: Request, body: UpdateRequest) -> Response:
        registration: Registration = request.app.state.registration
        try:
            engine = await registration.register(body.version)
        except InstallError as exc:
            return _bad(f"Install failed: {exc}", 503)
        return _ok({
            "version": engine.state.version,
            "waiting": engine is registration.waiting,
            "status":  engine.status(),
        })

    # ──────────────────────────────────────────────────────────────────────────
    # Background triggers / connectivity / pages
    # ──────────────────────────────────────────────────────────────────────────

    @app.post("/sw/sync/{tag}")
    async def sync(request: Request, tag: str) -> Response:
        engine = request.app.state.registration.active
        if engine is None:
            return _no_engine()
        try:
            result = await engine.handle_sync(tag)
        except ValueError:
            return _bad(f"Unknown sync tag: '{tag}'", 404)
        return _ok(result)

    @app.post("/sw/connectivity")
    async def connectivity(request: Request, body: ConnectivityEvent) -> Response:
        changed = await request.app.state.monitor.set_online(body.online)
        return _ok({"online": body.online, "changed": changed})

    @app.post("/sw/clients/{client_id}")
    async def register_client(request: Request, client_id: str) -> Response:
        clients: ClientRegistry = request.app.state.clients
        active = request.app.state.registration.active
        clients.register(client_id, active.state.version if active else None)
        return _ok({"client_id": client_id, "controller": clients.controller_of(client_id)})

    # ──────────────────────────────────────────────────────────────────────────
    # Forms / queue / notifications
    # ──────────────────────────────────────────────────────────────────────────

    @app.post("/sw/forms")
    async def submit_form(request: Request, body: FormSubmission) -> Response:
        try:
            outcome = await request.app.state.forms.handle(body)
        except QueueError as exc:
            return _bad(str(exc), 507)
        return _ok(outcome.model_dump(mode="json"))

    @app.get("/sw/queue")
    async def queue_contents(request: Request) -> Response:
        queue: SubmissionQueue = request.app.state.queue
        try:
            pending = await queue.list_pending()
            stats   = await queue.stats()
        except StorageError as exc:
            return _bad(f"Queue unavailable: {exc}", 503)
        return _ok({
            "pending": [item.model_dump(mode="json") for item in pending],
            "stats":   stats.model_dump(),
        })

    @app.get("/sw/notifications")
    async def notifications(
        request: Request,
        limit:   int = Query(20, ge=1, le=200),
    ) -> Response:
        recent = request.app.state.notifier.recent(limit)
        return _ok([note.model_dump(mode="json") for note in recent])

    # ──────────────────────────────────────────────────────────────────────────
    # Everything else: through the engine
    # ──────────────────────────────────────────────────────────────────────────

    @app.api_route("/{path:path}", methods=_PROXY_METHODS, include_in_schema=False)
    async def intercept(request: Request, path: str) -> Response:
        engine = request.app.state.registration.active
        if engine is None:
            return _no_engine()

        url = f"{settings.origin}/{path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        headers = {k: v for k, v in request.headers.items() if k.lower() != "host"}
        fetch_request = FetchRequest(
            url=url,
            method=request.method,
            headers=headers,
            destination=request.headers.get("sec-fetch-dest", ""),
            body=await request.body(),
        )

        snapshot = await engine.handle_fetch(fetch_request)
        out_headers = dict(snapshot.headers)
        out_headers["x-engine-source"] = snapshot.source.value
        return Response(
            content=snapshot.body,
            status_code=snapshot.status,
            headers=out_headers,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
