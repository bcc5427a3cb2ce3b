"""
Webhook Ingress
===============

Signature verification, payload summaries and event dispatch for GitHub
webhook deliveries. Every delivery is logged to webhook_events on receipt and
marked processed (with the error text on failure) once its handler finishes.

Dispatch table:
    workflow_run  completed + failure -> orchestrator.handle_failure
                  completed + success -> orchestrator.handle_success (same workflow only)
    check_run, pull_request, installation, ping -> logged only
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from healforge.collaborators import HealRequest
from healforge.db.models import WebhookEvent
from healforge.errors import SignatureError
from healforge.events import WebhookEventLog
from healforge.orchestrator import AutoHealOrchestrator

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def sign_payload(secret: str, body: bytes) -> str:
    """The X-Hub-Signature-256 value GitHub sends for this body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> None:
    """Raise SignatureError unless signature is the HMAC-SHA256 of body under secret."""
    if not secret:
        raise SignatureError("Webhook secret is not configured")
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        raise SignatureError("Missing or malformed signature")
    if not hmac.compare_digest(signature, sign_payload(secret, body)):
        raise SignatureError("Invalid webhook signature")


def _repo(payload: dict) -> tuple[Optional[str], Optional[str]]:
    repo = payload.get("repository") or {}
    owner = (repo.get("owner") or {}).get("login")
    return owner, repo.get("name")


def summarize_payload(event_type: str, payload: dict) -> dict[str, Any]:
    """The fields worth keeping from a delivery, per event type."""
    if event_type == "workflow_run":
        run = payload.get("workflow_run") or {}
        return {
            "run_id": run.get("id"),
            "conclusion": run.get("conclusion"),
            "workflow": run.get("name"),
            "head_sha": run.get("head_sha"),
        }
    if event_type == "check_run":
        check = payload.get("check_run") or {}
        return {"check_run_id": check.get("id"), "name": check.get("name"), "conclusion": check.get("conclusion")}
    if event_type == "pull_request":
        pr = payload.get("pull_request") or {}
        return {
            "pr_number": pr.get("number"),
            "head_sha": (pr.get("head") or {}).get("sha"),
            "title": pr.get("title"),
        }
    if event_type == "installation":
        installation = payload.get("installation") or {}
        return {
            "installation_id": installation.get("id"),
            "repositories": len(payload.get("repositories") or []),
        }
    if event_type == "ping":
        return {"zen": payload.get("zen")}
    return {}


def parse_heal_request(payload: dict) -> HealRequest:
    """Build a HealRequest from a workflow_run delivery."""
    run = payload.get("workflow_run") or {}
    owner, name = _repo(payload)
    return HealRequest(
        workflow_run_id=run["id"],
        repo_owner=owner or "",
        repo_name=name or "",
        commit_sha=run["head_sha"],
        installation_id=(payload.get("installation") or {}).get("id"),
        workflow_name=run.get("name") or "",
        pull_request_numbers=[pr["number"] for pr in run.get("pull_requests") or [] if "number" in pr],
        head_branch=run.get("head_branch"),
        run_attempt=run.get("run_attempt") or 1,
    )


class WebhookDispatcher:
    """Logs deliveries and routes them to their handlers."""

    def __init__(self, event_log: WebhookEventLog, orchestrator: AutoHealOrchestrator):
        self.event_log = event_log
        self.orchestrator = orchestrator
        self._handlers: dict[str, Callable[[dict], Awaitable[None]]] = {
            "workflow_run": self._on_workflow_run,
        }

    async def record(self, event_type: str, payload: dict) -> WebhookEvent:
        owner, name = _repo(payload)
        if event_type == "installation" and owner is None:
            account = (payload.get("installation") or {}).get("account") or {}
            owner = account.get("login") or account.get("name")
        return await self.event_log.log(
            event_type,
            payload.get("action"),
            owner,
            name,
            json.dumps(summarize_payload(event_type, payload)),
        )

    async def process(self, event_type: str, payload: dict, event_id: int) -> None:
        """Run the handler for one logged delivery and mark it processed."""
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Received %s event (logged only)", event_type)
            await self.event_log.mark_processed(event_id)
            return

        try:
            await handler(payload)
        except Exception as e:
            logger.exception("Error processing %s event %s", event_type, event_id)
            await self.event_log.mark_processed(event_id, f"{type(e).__name__}: {e}")
            return
        await self.event_log.mark_processed(event_id)

    async def _on_workflow_run(self, payload: dict) -> None:
        if payload.get("action") != "completed":
            return
        run = payload.get("workflow_run") or {}
        conclusion = run.get("conclusion")
        logger.info('Workflow "%s" completed with conclusion: %s', run.get("name"), conclusion)

        if conclusion == "failure":
            outcome = await self.orchestrator.handle_failure(parse_heal_request(payload))
            logger.info("Auto-heal outcome for %s: %s", run.get("head_sha", "")[:7], outcome.status.value)
        elif conclusion == "success":
            owner, name = _repo(payload)
            await self.orchestrator.handle_success(run["head_sha"], owner or "", name or "", run.get("name"))
