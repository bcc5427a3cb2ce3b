"""
Registry Storage
================

Pattern storage and the per-contributor rolling rate-limit window, both on
the HealForge database (community_patterns and contributor_rate_limits).
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from healforge.db.models import CommunityPattern, ContributorRateLimit
from healforge.registry.types import RegistryPattern

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; they were stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")


def _to_pattern(row: CommunityPattern) -> RegistryPattern:
    return RegistryPattern(
        id=row.pattern_id,
        type=row.pattern_type,
        data=json.loads(row.pattern_data),
        hash=row.pattern_hash,
        created_at=isoformat(row.created_at),
        updated_at=isoformat(row.updated_at),
    )


# =============================================================================
# Pattern store
# =============================================================================

class PatternStore:
    """Community patterns, deduplicated by id or content hash."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = utc_now):
        self._session_maker = session_maker
        self._clock = clock

    async def _exists(self, session: AsyncSession, pattern: RegistryPattern) -> bool:
        conditions = [CommunityPattern.pattern_id == pattern.id]
        if pattern.hash:
            conditions.append(CommunityPattern.pattern_hash == pattern.hash)
        result = await session.execute(select(CommunityPattern.id).where(or_(*conditions)).limit(1))
        return result.first() is not None

    async def save(self, pattern: RegistryPattern, contributor_id: Optional[str] = None) -> bool:
        """Insert one pattern. Returns False when it duplicates an existing one."""
        async with self._session_maker() as session:
            if await self._exists(session, pattern):
                return False
            session.add(CommunityPattern(
                pattern_id=pattern.id,
                pattern_type=pattern.type,
                pattern_data=json.dumps(pattern.data),
                contributor_id=contributor_id,
                pattern_hash=pattern.hash,
                created_at=self._clock(),
            ))
            try:
                await session.commit()
            except IntegrityError:
                # lost a race on the unique pattern_id
                await session.rollback()
                return False
            return True

    async def save_many(
        self, patterns: list[RegistryPattern], contributor_id: Optional[str] = None
    ) -> tuple[int, int, list[str]]:
        """Save a batch; returns (pushed, skipped, errors)."""
        pushed, skipped, errors = 0, 0, []
        for pattern in patterns:
            try:
                if await self.save(pattern, contributor_id):
                    pushed += 1
                else:
                    skipped += 1
            except SQLAlchemyError as e:
                logger.error("Failed to save pattern %s: %s", pattern.id, e)
                errors.append(f"Failed to save pattern {pattern.id}")
        return pushed, skipped, errors

    async def get(self, pattern_id: str) -> Optional[RegistryPattern]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(CommunityPattern).where(CommunityPattern.pattern_id == pattern_id)
            )
            row = result.scalar_one_or_none()
            return _to_pattern(row) if row else None

    async def query(
        self,
        pattern_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        since: Optional[datetime] = None,
    ) -> tuple[list[RegistryPattern], int]:
        """Newest patterns first, plus the total matching count."""
        conditions = []
        if pattern_type:
            conditions.append(CommunityPattern.pattern_type == pattern_type)
        if since is not None:
            conditions.append(CommunityPattern.created_at > since)

        async with self._session_maker() as session:
            total = await session.scalar(
                select(func.count()).select_from(CommunityPattern).where(*conditions)
            )
            result = await session.execute(
                select(CommunityPattern)
                .where(*conditions)
                .order_by(CommunityPattern.created_at.desc(), CommunityPattern.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_to_pattern(row) for row in result.scalars().all()], total or 0


# =============================================================================
# Rate limiter
# =============================================================================

@dataclass
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_at: Optional[datetime] = None

    @property
    def reset_at_iso(self) -> Optional[str]:
        return isoformat(self.reset_at)


class RateLimiter:
    """
    Fixed-duration rolling window per contributor.

    When now > window_start + window the window restarts at now with a zero
    count; otherwise remaining = max(0, max_requests - push_count).
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        max_requests: int = 100,
        window: timedelta = timedelta(hours=1),
        clock: Clock = utc_now,
    ):
        self._session_maker = session_maker
        self.max_requests = max_requests
        self.window = window
        self._clock = clock

    async def _get(self, session: AsyncSession, contributor_id: str) -> Optional[ContributorRateLimit]:
        result = await session.execute(
            select(ContributorRateLimit).where(ContributorRateLimit.contributor_id == contributor_id)
        )
        return result.scalar_one_or_none()

    def _expired(self, row: ContributorRateLimit, now: datetime) -> bool:
        return now > as_utc(row.window_start) + self.window

    async def check(self, contributor_id: str) -> RateLimitStatus:
        now = self._clock()
        async with self._session_maker() as session:
            row = await self._get(session, contributor_id)
            if row is None:
                return RateLimitStatus(True, self.max_requests, None)

            if self._expired(row, now):
                await session.execute(
                    update(ContributorRateLimit)
                    .where(ContributorRateLimit.id == row.id)
                    .values(push_count=0, window_start=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return RateLimitStatus(True, self.max_requests, now + self.window)

            remaining = max(0, self.max_requests - row.push_count)
            return RateLimitStatus(remaining > 0, remaining, as_utc(row.window_start) + self.window)

    async def increment(self, contributor_id: str, amount: int = 1) -> RateLimitStatus:
        """Count amount pushes against the contributor's current window."""
        now = self._clock()
        async with self._session_maker() as session:
            row = await self._get(session, contributor_id)
            if row is None:
                session.add(ContributorRateLimit(
                    contributor_id=contributor_id, push_count=amount, window_start=now,
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return await self.increment(contributor_id, amount)
                return RateLimitStatus(
                    amount < self.max_requests, max(0, self.max_requests - amount), now + self.window,
                )

            if self._expired(row, now):
                values = {"push_count": amount, "window_start": now}
            else:
                values = {"push_count": ContributorRateLimit.push_count + amount}
            await session.execute(
                update(ContributorRateLimit)
                .where(ContributorRateLimit.id == row.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            row = await self._get(session, contributor_id)
            await session.refresh(row)
            remaining = max(0, self.max_requests - row.push_count)
            return RateLimitStatus(remaining > 0, remaining, as_utc(row.window_start) + self.window)
