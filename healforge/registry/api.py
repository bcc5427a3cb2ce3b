"""
Registry HTTP API
=================

FastAPI router for the community pattern registry, mounted under /api:

    POST /patterns/push     push up to 50 patterns (header X-Contributor-Id)
    GET  /patterns/pull     paginated, filterable pattern listing
    GET  /patterns/{id}     one pattern
    GET  /health            service health

Error bodies carry a top-level "error" key; 429 responses also carry
"resetAt" and "remaining".
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from healforge.db import get_db
from healforge.registry.store import PatternStore, RateLimiter, utc_now
from healforge.registry.types import Pagination, PullResponse, PushResponse, RateLimitInfo, RegistryPattern

logger = logging.getLogger(__name__)

router = APIRouter(tags=["registry"])

API_VERSION = "1.0.0"
MAX_PUSH_BATCH = 50

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


# =============================================================================
# Request models
# =============================================================================

class PatternIn(BaseModel):
    id: str
    type: Literal["fix", "blueprint", "solution"]
    data: dict[str, Any]
    hash: Optional[str] = None

    @field_validator("id")
    @classmethod
    def id_is_uuid(cls, value: str) -> str:
        if not UUID_PATTERN.match(value):
            raise ValueError("must be a valid UUID")
        return value

    @field_validator("data")
    @classmethod
    def data_has_name_and_description(cls, value: dict[str, Any]) -> dict[str, Any]:
        name = value.get("name")
        description = value.get("description")
        if not isinstance(name, str) or not 3 <= len(name) <= 200:
            raise ValueError("pattern must have a name between 3 and 200 characters")
        if not isinstance(description, str) or not 10 <= len(description) <= 2000:
            raise ValueError("pattern must have a description between 10 and 2000 characters")
        return value


class PushRequest(BaseModel):
    patterns: list[PatternIn] = Field(min_length=1, max_length=MAX_PUSH_BATCH)


class PullQuery(BaseModel):
    type: Optional[Literal["fix", "blueprint", "solution"]] = None
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    since: Optional[datetime] = None


def _details(error: PydanticValidationError) -> list[dict]:
    return [{"path": [str(p) for p in err["loc"]], "message": err["msg"]} for err in error.errors()]


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, **extra})


def _store(request: Request) -> PatternStore:
    return request.app.state.pattern_store


def _limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


# =============================================================================
# Routes
# =============================================================================

@router.post("/patterns/push")
async def push_patterns(
    request: Request,
    x_contributor_id: Optional[str] = Header(None),
):
    """Accept patterns from a contributor, bounded by the rate-limit window."""
    if not x_contributor_id:
        return _error(400, "Invalid contributor ID",
                      details=[{"path": ["x-contributor-id"], "message": "header is required"}])
    if not 10 <= len(x_contributor_id) <= 100:
        return _error(400, "Invalid contributor ID",
                      details=[{"path": ["x-contributor-id"], "message": "must be between 10 and 100 characters"}])

    limiter = _limiter(request)
    status = await limiter.check(x_contributor_id)
    if not status.allowed:
        return _error(
            429, "Rate limit exceeded",
            message=f"You can push up to {limiter.max_requests} patterns per window",
            resetAt=status.reset_at_iso, remaining=0,
        )

    try:
        body = PushRequest.model_validate(await request.json())
    except PydanticValidationError as e:
        return _error(400, "Invalid request body", details=_details(e))
    except ValueError:
        return _error(400, "Invalid request body",
                      details=[{"path": [], "message": "Request body must be a JSON object"}])

    if len(body.patterns) > status.remaining:
        return _error(
            429, "Rate limit exceeded",
            message=f"You can only push {status.remaining} more patterns in this window",
            resetAt=status.reset_at_iso, remaining=status.remaining,
        )

    patterns = [RegistryPattern(id=p.id, type=p.type, data=p.data, hash=p.hash) for p in body.patterns]
    pushed, skipped, errors = await _store(request).save_many(patterns, x_contributor_id)
    after = await limiter.increment(x_contributor_id, pushed)

    logger.info("Contributor %s pushed %d pattern(s), skipped %d", x_contributor_id[:12], pushed, skipped)
    return PushResponse(
        status="error" if errors else "ok",
        pushed=pushed,
        skipped=skipped,
        errors=errors,
        rate_limit=RateLimitInfo(after.remaining, after.reset_at_iso),
    ).to_dict()


@router.get("/patterns/pull")
async def pull_patterns(request: Request):
    try:
        query = PullQuery.model_validate(dict(request.query_params))
    except PydanticValidationError as e:
        return _error(400, "Invalid query parameters", details=_details(e))

    since = query.since
    if since is not None:
        since = since.astimezone(timezone.utc) if since.tzinfo else since.replace(tzinfo=timezone.utc)

    patterns, total = await _store(request).query(query.type, query.limit, query.offset, since)
    return PullResponse(
        patterns=patterns,
        pagination=Pagination(
            offset=query.offset,
            limit=query.limit,
            total=total,
            has_more=query.offset + len(patterns) < total,
        ),
    ).to_dict()


@router.get("/patterns/{pattern_id}")
async def get_pattern(pattern_id: str, request: Request):
    if not UUID_PATTERN.match(pattern_id):
        return _error(400, "Invalid pattern ID", message="Pattern ID must be a valid UUID")

    pattern = await _store(request).get(pattern_id)
    if pattern is None:
        return _error(404, "Pattern not found", message=f"No pattern found with ID: {pattern_id}")
    return pattern.to_dict()


@router.get("/health")
async def health(session: AsyncSession = Depends(get_db)):
    timestamp = utc_now().isoformat()
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Registry health check failed: %s", e)
        return JSONResponse(
            status_code=503,
            content={"status": "error", "message": "Service unavailable", "timestamp": timestamp},
        )
    return {"status": "ok", "timestamp": timestamp, "version": API_VERSION}
