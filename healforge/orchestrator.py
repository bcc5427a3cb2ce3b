"""
Auto-Heal Orchestrator
======================

Turns a failed pipeline run into one bounded diagnose -> fix -> re-trigger
cycle. Every cycle that consumes budget is persisted (ledger increment and a
history row) before the call returns. The orchestrator never waits for the
re-triggered run: its result arrives later as a new event that re-enters
handle_failure or handle_success.

Usage:
    orchestrator = AutoHealOrchestrator(ledger, ci=github, scm=github,
                                        model=ClaudeFixModel(), notifier=github)
    outcome = await orchestrator.handle_failure(request)
    print(outcome.status, outcome.attempt_count)
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from healforge.collaborators import (
    CIProvider,
    FailedJob,
    FixModel,
    FixSuggestion,
    HealRequest,
    Notifier,
    SourceControl,
)
from healforge.db.models import RetryAttempt, STATUS_HEALING
from healforge.errors import FixApplicationFailure
from healforge.ledger import RetryLedger

logger = logging.getLogger(__name__)

MAX_LOG_CHARS = 5000
MAX_FIX_RECORD_CHARS = 10000
MAX_CONTEXT_FILES = 5
MAX_FILE_CHARS = 20000

_RUNNER_WORKDIR = re.compile(r"/home/runner/work/[^/\s]+/[^/\s]+/")
_FILE_PATH = re.compile(
    r"(?<![\w/.-])((?:[\w.-]+/)*[\w.-]+\.(?:py|pyi|ts|tsx|js|jsx|mjs|cjs|json|ya?ml|toml|css|scss|go|rs|java|rb))"
    r"(?=[:(\s'\"]|$)",
    re.MULTILINE,
)


class HealStatus(Enum):
    """How a heal request ended."""
    SKIPPED = "skipped"        # ledger row terminal, or a duplicate delivery
    EXHAUSTED = "exhausted"    # retry budget spent, humans notified
    ATTEMPTED = "attempted"    # fix delivered, waiting for the new run
    FAILED = "failed"          # attempt consumed without a fix, run re-triggered


@dataclass
class HealOutcome:
    status: HealStatus
    commit_sha: str
    attempt_count: int
    message: str = ""
    fix_commit_sha: Optional[str] = None
    pull_request_number: Optional[int] = None
    history_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "commit_sha": self.commit_sha,
            "attempt_count": self.attempt_count,
            "message": self.message,
            "fix_commit_sha": self.fix_commit_sha,
            "pull_request_number": self.pull_request_number,
            "history_id": self.history_id,
        }


def build_error_summary(failed_jobs: list[FailedJob]) -> str:
    """One line per failed job naming its failed steps."""
    lines = []
    for job in failed_jobs:
        steps = job.failed_step_names
        if steps:
            lines.append(f'Job "{job.name}" failed at steps: {", ".join(steps)}')
        else:
            lines.append(f'Job "{job.name}" failed')
    return "\n".join(lines)


def extract_file_paths(logs: str, limit: int = MAX_CONTEXT_FILES) -> list[str]:
    """Repository-relative source paths mentioned in CI logs, in order of first mention."""
    text = _RUNNER_WORKDIR.sub("", logs)
    paths: list[str] = []
    for match in _FILE_PATH.finditer(text):
        path = match.group(1)
        if path.startswith("./"):
            path = path[2:]
        if "node_modules/" in path or path.startswith(".") or path in paths:
            continue
        paths.append(path)
        if len(paths) >= limit:
            break
    return paths


class AutoHealOrchestrator:
    """
    Bounded self-healing loop for remote pipeline failures.

    The retry budget belongs to the commit that originally failed; fix commits
    produced by earlier attempts resolve back to it through the heal history.
    """

    def __init__(
        self,
        ledger: RetryLedger,
        ci: CIProvider,
        scm: SourceControl,
        model: FixModel,
        notifier: Notifier,
        max_retries: int = 10,
        fix_delivery: str = "commit",
        min_confidence: float = 0.0,
    ):
        self.ledger = ledger
        self.ci = ci
        self.scm = scm
        self.model = model
        self.notifier = notifier
        self.max_retries = max_retries
        self.fix_delivery = fix_delivery
        self.min_confidence = min_confidence

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def handle_failure(self, request: HealRequest) -> HealOutcome:
        """Run one heal cycle for a failed run."""
        started = time.monotonic()
        owner, repo = request.repo_owner, request.repo_name

        attempt = await self._resolve_attempt(request)
        ledger_sha = attempt.commit_sha

        if attempt.is_terminal:
            logger.info(
                "Skipping %s@%s: ledger already %s", request.repo_slug, attempt.short_sha, attempt.status
            )
            return HealOutcome(
                HealStatus.SKIPPED, ledger_sha, attempt.attempt_count,
                message=f"ledger status is {attempt.status}",
            )

        if request.workflow_run_id is not None:
            claimed = await self.ledger.claim_run(
                attempt.id, owner, repo, request.workflow_run_id, request.run_attempt
            )
            if not claimed:
                logger.info(
                    "Run %s (attempt %d) of %s already handled, ignoring duplicate delivery",
                    request.workflow_run_id, request.run_attempt, request.repo_slug,
                )
                return HealOutcome(
                    HealStatus.SKIPPED, ledger_sha, attempt.attempt_count,
                    message="duplicate delivery",
                )

        if await self.ledger.is_max_retries_reached(ledger_sha, owner, repo, self.max_retries):
            last_error = attempt.last_error or request.error_message or build_error_summary(request.failed_jobs)
            return await self._exhaust(request, attempt, last_error or "retry budget spent", started)

        logger.info(
            "Auto-heal %s@%s attempt %d/%d",
            request.repo_slug, attempt.short_sha, attempt.attempt_count + 1, self.max_retries,
        )

        error_summary = request.error_message or build_error_summary(request.failed_jobs)
        context = ""
        try:
            error_summary, logs = await self._diagnose(request)
            file_contents = await self._gather_files(request, logs)
            context = self._build_context(request, attempt, logs)
            suggestion = await self.model.suggest_fix(error_summary, file_contents, context)
            self._check_suggestion(suggestion)
            fix_sha, pr_number = await self._deliver(request, suggestion)
        except Exception as e:
            logger.warning("Auto-heal attempt for %s@%s failed: %s", request.repo_slug, attempt.short_sha, e)
            return await self._record_failure(request, ledger_sha, error_summary, context, e, started)

        attempt = await self.ledger.increment(ledger_sha, owner, repo, error_summary)

        history = await self.ledger.record_heal_attempt(
            attempt.id,
            error_summary,
            fix_prompt=context[:MAX_FIX_RECORD_CHARS],
            fix_applied=json.dumps(suggestion.to_dict())[:MAX_FIX_RECORD_CHARS],
            commit_sha_before=request.commit_sha,
            commit_sha_after=fix_sha,
            success=True,
            duration_ms=self._elapsed_ms(started),
        )
        logger.info(
            "Fix for %s@%s delivered as %s", request.repo_slug, attempt.short_sha, fix_sha[:7]
        )
        return HealOutcome(
            HealStatus.ATTEMPTED, ledger_sha, attempt.attempt_count,
            message=suggestion.description,
            fix_commit_sha=fix_sha,
            pull_request_number=pr_number,
            history_id=history.id,
        )

    async def handle_success(
        self, commit_sha: str, repo_owner: str, repo_name: str, workflow_name: Optional[str] = None,
    ) -> Optional[RetryAttempt]:
        """
        A run for this commit passed. If the commit, or a fix commit produced
        for it, is being healed, close the ledger row as success.

        Only a passing run of the workflow being healed closes the row; other
        workflows on the same commit say nothing about that failure. Rows
        opened without a workflow (manual triggers) close on any passing run.
        """
        attempt = await self.ledger.get(commit_sha, repo_owner, repo_name)
        if attempt is None:
            attempt = await self.ledger.find_origin(commit_sha, repo_owner, repo_name)
        if attempt is None or attempt.status != STATUS_HEALING:
            return attempt
        if attempt.workflow_name and workflow_name != attempt.workflow_name:
            logger.debug(
                'Ignoring "%s" success on %s, healing "%s"', workflow_name, commit_sha[:7], attempt.workflow_name
            )
            return attempt

        logger.info("Healed %s/%s@%s", repo_owner, repo_name, attempt.short_sha)
        return await self.ledger.mark_success(attempt.commit_sha, repo_owner, repo_name)

    async def manual_trigger(
        self,
        repo_owner: str,
        repo_name: str,
        commit_sha: str,
        error_message: str,
        workflow_run_id: Optional[int] = None,
        head_branch: Optional[str] = None,
    ) -> HealOutcome:
        """Operator-initiated healing through the same flow as a webhook."""
        logger.info("Manual auto-heal trigger for %s/%s@%s", repo_owner, repo_name, commit_sha[:7])
        request = HealRequest(
            workflow_run_id=workflow_run_id,
            repo_owner=repo_owner,
            repo_name=repo_name,
            commit_sha=commit_sha,
            head_branch=head_branch,
            error_message=error_message,
        )
        return await self.handle_failure(request)

    # -------------------------------------------------------------------------
    # Cycle steps
    # -------------------------------------------------------------------------

    async def _resolve_attempt(self, request: HealRequest) -> RetryAttempt:
        owner, repo = request.repo_owner, request.repo_name
        existing = await self.ledger.get(request.commit_sha, owner, repo)
        if existing is not None:
            return existing
        origin = await self.ledger.find_origin(request.commit_sha, owner, repo)
        if origin is not None:
            logger.info(
                "%s is a fix commit for %s, using its retry budget", request.commit_sha[:7], origin.short_sha
            )
            return origin
        return await self.ledger.get_or_create(
            request.commit_sha, owner, repo, request.workflow_run_id, request.workflow_name
        )

    async def _diagnose(self, request: HealRequest) -> tuple[str, str]:
        """Return (error summary, truncated logs) for the failed run."""
        if request.workflow_run_id is None:
            return request.error_message or "", ""

        owner, repo, run_id = request.repo_owner, request.repo_name, request.workflow_run_id
        if not request.failed_jobs:
            request.failed_jobs = await self.ci.fetch_failed_job_details(owner, repo, run_id)
        logs = await self.ci.fetch_logs(owner, repo, run_id)

        summary = build_error_summary(request.failed_jobs)
        if request.error_message:
            summary = f"{request.error_message}\n{summary}" if summary else request.error_message
        return summary, logs[:MAX_LOG_CHARS]

    async def _gather_files(self, request: HealRequest, logs: str) -> dict[str, str]:
        contents: dict[str, str] = {}
        for path in extract_file_paths(logs):
            text = await self.scm.get_file_contents(
                request.repo_owner, request.repo_name, path, request.commit_sha
            )
            if text is not None:
                contents[path] = text[:MAX_FILE_CHARS]
        return contents

    def _build_context(self, request: HealRequest, attempt: RetryAttempt, logs: str) -> str:
        return json.dumps({
            "workflow_run_id": request.workflow_run_id,
            "workflow_name": request.workflow_name,
            "failed_jobs": [job.to_dict() for job in request.failed_jobs],
            "attempt": attempt.attempt_count + 1,
            "logs": logs,
        })

    def _check_suggestion(self, suggestion: FixSuggestion) -> None:
        if not suggestion.files:
            raise FixApplicationFailure("Model proposed no file changes")
        if suggestion.confidence < self.min_confidence:
            raise FixApplicationFailure(
                f"Fix confidence {suggestion.confidence:.2f} is below the minimum {self.min_confidence:.2f}"
            )

    async def _deliver(self, request: HealRequest, suggestion: FixSuggestion) -> tuple[str, Optional[int]]:
        """Apply the suggested changes; returns (fix commit SHA, PR number or None)."""
        if not request.head_branch:
            raise FixApplicationFailure("No branch to apply the fix to")

        owner, repo = request.repo_owner, request.repo_name
        title = f"fix: auto-heal {request.workflow_name or 'pipeline'} failure"
        if self.fix_delivery == "pull_request":
            pr_number, fix_sha = await self.scm.open_pull_request(
                owner, repo, request.head_branch, request.commit_sha,
                suggestion.files, title, self._pr_body(suggestion),
            )
            return fix_sha, pr_number

        message = f"{title}\n\n{suggestion.description}"
        fix_sha = await self.scm.commit_and_push(
            owner, repo, request.head_branch, request.commit_sha, suggestion.files, message,
        )
        return fix_sha, None

    @staticmethod
    def _pr_body(suggestion: FixSuggestion) -> str:
        files = "\n".join(f"- `{f.path}` ({f.action})" for f in suggestion.files)
        return (
            f"## Auto-heal fix\n\n{suggestion.analysis}\n\n"
            f"**Root cause:** {suggestion.root_cause}\n\n"
            f"**Fix:** {suggestion.description}\n\n{files}\n\n"
            f"Confidence: {suggestion.confidence:.0%}"
        )

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    async def _record_failure(
        self,
        request: HealRequest,
        ledger_sha: str,
        error_summary: str,
        context: str,
        error: Exception,
        started: float,
    ) -> HealOutcome:
        """A cycle that failed before delivering a fix still spends budget."""
        owner, repo = request.repo_owner, request.repo_name
        error_text = f"{error_summary}\n{type(error).__name__}: {error}".strip()

        attempt = await self.ledger.increment(ledger_sha, owner, repo, error_text)
        history = await self.ledger.record_heal_attempt(
            attempt.id,
            error_text,
            fix_prompt=context[:MAX_FIX_RECORD_CHARS] or None,
            commit_sha_before=request.commit_sha,
            success=False,
            duration_ms=self._elapsed_ms(started),
        )

        if attempt.attempt_count >= self.max_retries:
            await self.ledger.mark_exhausted(ledger_sha, owner, repo)
            await self._notify(request, attempt.attempt_count, error_text)
            return HealOutcome(
                HealStatus.EXHAUSTED, ledger_sha, attempt.attempt_count,
                message=error_text, history_id=history.id,
            )

        try:
            await self._retrigger(request)
        except Exception as e:
            logger.error("Could not re-trigger %s run %s: %s", request.repo_slug, request.workflow_run_id, e)
            await self.ledger.mark_exhausted(ledger_sha, owner, repo)
            await self._notify(request, attempt.attempt_count, f"{error_text}\nRe-trigger failed: {e}")
            return HealOutcome(
                HealStatus.EXHAUSTED, ledger_sha, attempt.attempt_count,
                message=f"re-trigger failed: {e}", history_id=history.id,
            )

        return HealOutcome(
            HealStatus.FAILED, ledger_sha, attempt.attempt_count,
            message=error_text, history_id=history.id,
        )

    async def _retrigger(self, request: HealRequest) -> None:
        if request.workflow_run_id is None:
            raise FixApplicationFailure("No workflow run to re-trigger")
        await self.ci.rerun_workflow(request.repo_owner, request.repo_name, request.workflow_run_id)

    async def _exhaust(
        self, request: HealRequest, attempt: RetryAttempt, last_error: str, started: float
    ) -> HealOutcome:
        owner, repo = request.repo_owner, request.repo_name
        logger.warning(
            "Max retries (%d) reached for %s@%s", self.max_retries, request.repo_slug, attempt.short_sha
        )
        await self.ledger.mark_exhausted(attempt.commit_sha, owner, repo)
        history = await self.ledger.record_heal_attempt(
            attempt.id,
            last_error,
            commit_sha_before=request.commit_sha,
            success=False,
            duration_ms=self._elapsed_ms(started),
        )
        await self._notify(request, attempt.attempt_count, last_error)
        return HealOutcome(
            HealStatus.EXHAUSTED, attempt.commit_sha, attempt.attempt_count,
            message=last_error, history_id=history.id,
        )

    async def _notify(self, request: HealRequest, attempts: int, last_error: str) -> None:
        try:
            await self.notifier.notify_exhausted(request, attempts, self.max_retries, last_error)
        except Exception as e:
            # ledger is already terminal here
            logger.error("Failed to send exhausted notification for %s: %s", request.repo_slug, e)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
