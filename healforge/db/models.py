"""
Database Models for HealForge
=============================

SQLAlchemy models for the retry ledger, auto-heal audit trail, webhook
ingress log and the community pattern registry.
"""

from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


# Ledger statuses
STATUS_PENDING = "pending"
STATUS_HEALING = "healing"
STATUS_SUCCESS = "success"
STATUS_EXHAUSTED = "exhausted"

TERMINAL_STATUSES = frozenset({STATUS_SUCCESS, STATUS_EXHAUSTED})

PATTERN_TYPES = ("fix", "blueprint", "solution")


class RetryAttempt(Base):
    """One healing ledger row per (commit, repository)."""
    __tablename__ = "retry_attempts"
    __table_args__ = (
        UniqueConstraint("commit_sha", "repo_owner", "repo_name", name="uq_retry_commit"),
        CheckConstraint("attempt_count >= 0", name="ck_retry_attempt_count"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    commit_sha: Mapped[str] = mapped_column(String(64))
    repo_owner: Mapped[str] = mapped_column(String(100))
    repo_name: Mapped[str] = mapped_column(String(100))
    workflow_run_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    workflow_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)  # workflow being healed

    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING, index=True)  # pending, healing, success, exhausted

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    history: Mapped[List["AutoHealHistory"]] = relationship(back_populates="retry_attempt")

    @property
    def short_sha(self) -> str:
        return self.commit_sha[:7]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AutoHealHistory(Base):
    """Append-only audit row for one orchestrator cycle."""
    __tablename__ = "auto_heal_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    retry_attempt_id: Mapped[int] = mapped_column(ForeignKey("retry_attempts.id"), index=True)
    error_message: Mapped[str] = mapped_column(Text)
    fix_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fix_applied: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON list of file changes
    commit_sha_before: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    commit_sha_after: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    retry_attempt: Mapped["RetryAttempt"] = relationship(back_populates="history")


class HandledRun(Base):
    """A (run, run attempt) the orchestrator has already taken a failure event for."""
    __tablename__ = "handled_runs"
    __table_args__ = (
        UniqueConstraint("repo_owner", "repo_name", "workflow_run_id", "run_attempt", name="uq_handled_run"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    retry_attempt_id: Mapped[int] = mapped_column(ForeignKey("retry_attempts.id"), index=True)
    repo_owner: Mapped[str] = mapped_column(String(100))
    repo_name: Mapped[str] = mapped_column(String(100))
    workflow_run_id: Mapped[int] = mapped_column(Integer)
    run_attempt: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WebhookEvent(Base):
    """Ingress log: one row per received webhook delivery."""
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50))
    action: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    repo_owner: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    repo_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


class CommunityPattern(Base):
    """An anonymized pattern shared through the registry."""
    __tablename__ = "community_patterns"
    __table_args__ = (
        CheckConstraint("pattern_type IN ('fix', 'blueprint', 'solution')", name="ck_pattern_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pattern_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    pattern_type: Mapped[str] = mapped_column(String(20), index=True)
    pattern_data: Mapped[str] = mapped_column(Text)  # JSON document
    contributor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    pattern_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ContributorRateLimit(Base):
    """Rolling push counter for one contributor."""
    __tablename__ = "contributor_rate_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contributor_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    push_count: Mapped[int] = mapped_column(Integer, default=0)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
