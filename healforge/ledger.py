"""
Retry Ledger
============

Durable per-(commit, repository) record of auto-heal attempts, plus the
append-only heal history that audits each attempt.

Storage: All data is persisted in the HealForge SQLite database. Every
mutation is a single conditional statement, so correctness depends only on
the store's per-row atomicity and the UNIQUE(commit_sha, repo_owner,
repo_name) constraint, never on in-process locks.

State machine:

    pending --increment--> healing --mark_success--> success
                           healing --mark_exhausted--> exhausted
    success | exhausted --reset--> pending

Usage:
    from healforge.ledger import RetryLedger

    ledger = RetryLedger(session_maker)
    attempt = await ledger.get_or_create("abc123", "octo", "repo", run_id=42)
    attempt = await ledger.increment("abc123", "octo", "repo", "lint failed")
    if await ledger.is_max_retries_reached("abc123", "octo", "repo", 10):
        await ledger.mark_exhausted("abc123", "octo", "repo")
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from healforge.db.models import (
    AutoHealHistory,
    HandledRun,
    RetryAttempt,
    STATUS_EXHAUSTED,
    STATUS_HEALING,
    STATUS_PENDING,
    STATUS_SUCCESS,
    TERMINAL_STATUSES,
)
from healforge.errors import InvalidTransitionError, StoreIntegrityError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _key(commit_sha: str, repo_owner: str, repo_name: str):
    return (
        RetryAttempt.commit_sha == commit_sha,
        RetryAttempt.repo_owner == repo_owner,
        RetryAttempt.repo_name == repo_name,
    )


class RetryLedger:
    """
    Async access to the retry_attempts and auto_heal_history tables.

    Each public method opens its own short session so a call is one
    read-modify-write against the store.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _select(
        self, session: AsyncSession, commit_sha: str, repo_owner: str, repo_name: str
    ) -> Optional[RetryAttempt]:
        result = await session.execute(
            select(RetryAttempt).where(*_key(commit_sha, repo_owner, repo_name))
        )
        return result.scalar_one_or_none()

    async def get(self, commit_sha: str, repo_owner: str, repo_name: str) -> Optional[RetryAttempt]:
        """Get the ledger row for a commit, or None."""
        async with self._session_maker() as session:
            return await self._select(session, commit_sha, repo_owner, repo_name)

    async def get_active(self) -> list[RetryAttempt]:
        """All rows still pending or healing."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(RetryAttempt)
                .where(RetryAttempt.status.in_((STATUS_PENDING, STATUS_HEALING)))
                .order_by(RetryAttempt.id)
            )
            return list(result.scalars().all())

    async def list_recent(self, limit: int = 20) -> list[RetryAttempt]:
        """Most recently touched rows first."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(RetryAttempt)
                .order_by(RetryAttempt.updated_at.desc(), RetryAttempt.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def is_max_retries_reached(
        self, commit_sha: str, repo_owner: str, repo_name: str, max_retries: int
    ) -> bool:
        """True when attempt_count >= max_retries. False when no row exists."""
        attempt = await self.get(commit_sha, repo_owner, repo_name)
        return attempt is not None and attempt.attempt_count >= max_retries

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def get_or_create(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
        workflow_run_id: Optional[int] = None,
        workflow_name: Optional[str] = None,
    ) -> RetryAttempt:
        """
        Return the row for this commit, creating it in 'pending' if absent.
        The workflow that opened the row is the one being healed.

        A create that loses a race against a concurrent insert hits the
        UNIQUE constraint; the existing row is returned instead.
        """
        async with self._session_maker() as session:
            existing = await self._select(session, commit_sha, repo_owner, repo_name)
            if existing is not None:
                return existing

            attempt = RetryAttempt(
                commit_sha=commit_sha,
                repo_owner=repo_owner,
                repo_name=repo_name,
                workflow_run_id=workflow_run_id,
                workflow_name=workflow_name or None,
                attempt_count=0,
                status=STATUS_PENDING,
            )
            session.add(attempt)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._select(session, commit_sha, repo_owner, repo_name)
                if existing is None:
                    raise StoreIntegrityError(
                        f"Insert for {repo_owner}/{repo_name}@{commit_sha[:7]} conflicted "
                        "but no existing row was found"
                    )
                return existing

            await session.refresh(attempt)
            logger.info("Opened retry ledger for %s/%s@%s", repo_owner, repo_name, commit_sha[:7])
            return attempt

    async def _transition(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
        requested: str,
        allowed_from: tuple[str, ...],
        values: dict,
    ) -> RetryAttempt:
        """Apply a conditional UPDATE and report why it did not match."""
        async with self._session_maker() as session:
            result = await session.execute(
                update(RetryAttempt)
                .where(*_key(commit_sha, repo_owner, repo_name))
                .where(RetryAttempt.status.in_(allowed_from))
                .values(updated_at=_now(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                current = await self._select(session, commit_sha, repo_owner, repo_name)
                if current is None:
                    raise StoreIntegrityError(
                        f"No retry ledger row for {repo_owner}/{repo_name}@{commit_sha[:7]}"
                    )
                raise InvalidTransitionError(current.status, requested)

            await session.commit()
            attempt = await self._select(session, commit_sha, repo_owner, repo_name)
            if attempt is None:
                raise StoreIntegrityError(
                    f"Retry ledger row for {repo_owner}/{repo_name}@{commit_sha[:7]} vanished"
                )
            return attempt

    async def increment(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
        error: Optional[str] = None,
    ) -> RetryAttempt:
        """
        Record one more healing attempt and move the row to 'healing'.

        Raises InvalidTransitionError on a success/exhausted row; those must
        be reset first.
        """
        now = _now()
        attempt = await self._transition(
            commit_sha,
            repo_owner,
            repo_name,
            STATUS_HEALING,
            (STATUS_PENDING, STATUS_HEALING),
            {
                "attempt_count": RetryAttempt.attempt_count + 1,
                "last_attempt_at": now,
                "last_error": error,
                "status": STATUS_HEALING,
            },
        )
        logger.info(
            "Attempt %d recorded for %s/%s@%s",
            attempt.attempt_count, repo_owner, repo_name, commit_sha[:7],
        )
        return attempt

    async def mark_success(self, commit_sha: str, repo_owner: str, repo_name: str) -> RetryAttempt:
        """Terminal transition healing -> success. Idempotent."""
        return await self._transition(
            commit_sha, repo_owner, repo_name,
            STATUS_SUCCESS,
            (STATUS_HEALING, STATUS_SUCCESS),
            {"status": STATUS_SUCCESS},
        )

    async def mark_exhausted(self, commit_sha: str, repo_owner: str, repo_name: str) -> RetryAttempt:
        """Terminal transition to exhausted once the retry budget is spent. Idempotent."""
        return await self._transition(
            commit_sha, repo_owner, repo_name,
            STATUS_EXHAUSTED,
            (STATUS_PENDING, STATUS_HEALING, STATUS_EXHAUSTED),
            {"status": STATUS_EXHAUSTED},
        )

    async def reset(self, commit_sha: str, repo_owner: str, repo_name: str) -> RetryAttempt:
        """Administrative override: attempt_count=0, status=pending."""
        attempt = await self._transition(
            commit_sha, repo_owner, repo_name,
            STATUS_PENDING,
            (STATUS_PENDING, STATUS_HEALING, *TERMINAL_STATUSES),
            {"attempt_count": 0, "status": STATUS_PENDING},
        )
        logger.info("Reset retry ledger for %s/%s@%s", repo_owner, repo_name, commit_sha[:7])
        return attempt

    async def claim_run(
        self,
        retry_attempt_id: int,
        repo_owner: str,
        repo_name: str,
        workflow_run_id: int,
        run_attempt: int = 1,
    ) -> bool:
        """
        Take the failure event of one run attempt for a heal cycle.

        Returns False when the same (run, run attempt) was already taken,
        i.e. the delivery is a duplicate. The UNIQUE constraint decides
        between concurrent claims.
        """
        async with self._session_maker() as session:
            session.add(HandledRun(
                retry_attempt_id=retry_attempt_id,
                repo_owner=repo_owner,
                repo_name=repo_name,
                workflow_run_id=workflow_run_id,
                run_attempt=run_attempt,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    # -------------------------------------------------------------------------
    # Heal history
    # -------------------------------------------------------------------------

    async def record_heal_attempt(
        self,
        retry_attempt_id: int,
        error_message: str,
        fix_prompt: Optional[str] = None,
        fix_applied: Optional[str] = None,
        commit_sha_before: Optional[str] = None,
        commit_sha_after: Optional[str] = None,
        success: bool = False,
        duration_ms: Optional[int] = None,
    ) -> AutoHealHistory:
        """Append one immutable audit row."""
        async with self._session_maker() as session:
            row = AutoHealHistory(
                retry_attempt_id=retry_attempt_id,
                error_message=error_message,
                fix_prompt=fix_prompt,
                fix_applied=fix_applied,
                commit_sha_before=commit_sha_before,
                commit_sha_after=commit_sha_after,
                success=success,
                duration_ms=duration_ms,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise StoreIntegrityError(f"Could not record heal attempt: {e}") from e
            await session.refresh(row)
            return row

    async def get_heal_history(self, retry_attempt_id: int) -> list[AutoHealHistory]:
        """History rows for one ledger row, newest first."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(AutoHealHistory)
                .where(AutoHealHistory.retry_attempt_id == retry_attempt_id)
                .order_by(AutoHealHistory.created_at.desc(), AutoHealHistory.id.desc())
            )
            return list(result.scalars().all())

    async def find_origin(
        self, commit_sha: str, repo_owner: str, repo_name: str
    ) -> Optional[RetryAttempt]:
        """
        Find the ledger row whose recorded fix produced this commit.

        Fix commits are recorded on the row of the commit that originally
        failed, so one lookup resolves a whole chain of fix commits.
        """
        async with self._session_maker() as session:
            result = await session.execute(
                select(RetryAttempt)
                .join(AutoHealHistory, AutoHealHistory.retry_attempt_id == RetryAttempt.id)
                .where(
                    AutoHealHistory.commit_sha_after == commit_sha,
                    RetryAttempt.repo_owner == repo_owner,
                    RetryAttempt.repo_name == repo_name,
                )
                .order_by(AutoHealHistory.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
