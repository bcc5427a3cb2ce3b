"""
HealForge Server
================

FastAPI application receiving GitHub webhooks and serving the pattern
registry.

    POST /webhook      GitHub deliveries (X-GitHub-Event, X-Hub-Signature-256)
    GET  /health       liveness
    GET  /status       active retry attempts and recent webhook events
    /api/...           pattern registry (see healforge.registry.api)

Usage:
    import uvicorn
    from healforge.server import create_app

    uvicorn.run(create_app(), host="0.0.0.0", port=3000)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from healforge.collaborators import FixModel
from healforge.config import HealConfig, RegistryConfig
from healforge.db import close_db, init_db
from healforge.errors import SignatureError
from healforge.events import WebhookEventLog
from healforge.github_client import GitHubClient
from healforge.ledger import RetryLedger
from healforge.llm import ClaudeFixModel
from healforge.orchestrator import AutoHealOrchestrator
from healforge.registry.api import router as registry_router
from healforge.registry.store import PatternStore, RateLimiter
from healforge.webhooks import WebhookDispatcher, verify_signature

logger = logging.getLogger(__name__)

ENDPOINTS = ["GET /health", "GET /status", "POST /webhook", "POST /api/patterns/push",
             "GET /api/patterns/pull", "GET /api/patterns/{id}", "GET /api/health"]
RECENT_EVENTS_LIMIT = 10


def create_app(
    config: Optional[HealConfig] = None,
    registry_config: Optional[RegistryConfig] = None,
    *,
    github: Optional[GitHubClient] = None,
    fix_model: Optional[FixModel] = None,
) -> FastAPI:
    """
    Build the application. Collaborators default to the GitHub REST adapter
    and the Claude fix model; tests pass fakes.
    """
    config = config or HealConfig.load()
    registry_config = registry_config or RegistryConfig.load()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        session_maker = await init_db(config.database_path)
        gh = github or GitHubClient.from_config(config)
        ledger = RetryLedger(session_maker)
        event_log = WebhookEventLog(session_maker)
        orchestrator = AutoHealOrchestrator(
            ledger,
            ci=gh,
            scm=gh,
            model=fix_model or ClaudeFixModel.from_config(config),
            notifier=gh,
            max_retries=config.max_retries,
            fix_delivery=config.fix_delivery,
            min_confidence=config.min_confidence,
        )

        app.state.config = config
        app.state.session_maker = session_maker
        app.state.ledger = ledger
        app.state.event_log = event_log
        app.state.orchestrator = orchestrator
        app.state.dispatcher = WebhookDispatcher(event_log, orchestrator)
        app.state.pattern_store = PatternStore(session_maker)
        app.state.rate_limiter = RateLimiter(
            session_maker,
            max_requests=registry_config.rate_limit_max,
            window=timedelta(minutes=registry_config.rate_limit_window_minutes),
        )
        logger.info("HealForge server ready (max retries %d, %s delivery)", config.max_retries, config.fix_delivery)
        yield
        await close_db()

    app = FastAPI(title="HealForge", lifespan=lifespan)
    app.include_router(registry_router, prefix="/api")

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            return JSONResponse(status_code=404, content={"error": "Not found", "endpoints": ENDPOINTS})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "healforge"}

    @app.get("/status")
    async def status(request: Request):
        active = await request.app.state.ledger.get_active()
        events = await request.app.state.event_log.recent(RECENT_EVENTS_LIMIT)
        return {
            "status": "ok",
            "active_attempts": [
                {
                    "commit_sha": a.commit_sha,
                    "repo": f"{a.repo_owner}/{a.repo_name}",
                    "attempt_count": a.attempt_count,
                    "status": a.status,
                    "workflow": a.workflow_name,
                    "last_error": a.last_error,
                }
                for a in active
            ],
            "recent_events": [
                {
                    "id": e.id,
                    "event_type": e.event_type,
                    "action": e.action,
                    "repo": f"{e.repo_owner}/{e.repo_name}" if e.repo_name else e.repo_owner,
                    "processed": e.processed,
                    "error": e.error,
                    "created_at": e.created_at.isoformat() if e.created_at else None,
                }
                for e in events
            ],
        }

    @app.post("/webhook")
    async def webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        x_github_event: Optional[str] = Header(None),
        x_hub_signature_256: Optional[str] = Header(None),
    ):
        if not x_github_event or not x_hub_signature_256:
            raise HTTPException(status_code=400, detail="Missing X-GitHub-Event or X-Hub-Signature-256 header")

        body = await request.body()
        try:
            verify_signature(config.webhook_secret, body, x_hub_signature_256)
        except SignatureError as e:
            logger.warning("Rejected %s delivery: %s", x_github_event, e)
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Body is not valid JSON")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

        dispatcher: WebhookDispatcher = request.app.state.dispatcher
        event = await dispatcher.record(x_github_event, payload)
        background_tasks.add_task(dispatcher.process, x_github_event, payload, event.id)
        return {"status": "ok", "event": x_github_event}

    return app
