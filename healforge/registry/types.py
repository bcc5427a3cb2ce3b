"""
Registry wire types shared by the client and the service.

Field names on the wire are camelCase (createdAt, resetAt, hasMore).
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class RegistryPattern:
    """An anonymized fix, blueprint or solution pattern."""
    id: str
    type: str  # fix, blueprint, solution
    data: dict[str, Any]
    hash: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> dict:
        result: dict[str, Any] = {"id": self.id, "type": self.type, "data": self.data}
        if self.hash is not None:
            result["hash"] = self.hash
        if self.created_at is not None:
            result["createdAt"] = self.created_at
        if self.updated_at is not None:
            result["updatedAt"] = self.updated_at
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "RegistryPattern":
        return cls(
            id=data["id"],
            type=data["type"],
            data=data.get("data") or {},
            hash=data.get("hash"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class RateLimitInfo:
    remaining: int
    reset_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {"remaining": self.remaining, "resetAt": self.reset_at}


@dataclass
class PushResponse:
    status: str
    pushed: int
    skipped: int
    rate_limit: RateLimitInfo
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        result = {
            "status": self.status,
            "pushed": self.pushed,
            "skipped": self.skipped,
            "rateLimit": self.rate_limit.to_dict(),
        }
        if self.errors:
            result["errors"] = self.errors
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "PushResponse":
        rate_limit = data.get("rateLimit") or {}
        return cls(
            status=data.get("status", "ok"),
            pushed=data.get("pushed", 0),
            skipped=data.get("skipped", 0),
            rate_limit=RateLimitInfo(rate_limit.get("remaining", 0), rate_limit.get("resetAt")),
            errors=data.get("errors") or [],
        )


@dataclass
class Pagination:
    offset: int
    limit: int
    total: int
    has_more: bool

    def to_dict(self) -> dict:
        return {"offset": self.offset, "limit": self.limit, "total": self.total, "hasMore": self.has_more}


@dataclass
class PullResponse:
    patterns: list[RegistryPattern]
    pagination: Pagination

    def to_dict(self) -> dict:
        return {
            "patterns": [p.to_dict() for p in self.patterns],
            "pagination": self.pagination.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PullResponse":
        page = data.get("pagination") or {}
        patterns = [RegistryPattern.from_dict(p) for p in data.get("patterns") or []]
        return cls(
            patterns=patterns,
            pagination=Pagination(
                offset=page.get("offset", 0),
                limit=page.get("limit", len(patterns)),
                total=page.get("total", len(patterns)),
                has_more=page.get("hasMore", False),
            ),
        )
