"""
Auto-Heal Collaborators
=======================

Data carried between the orchestrator and its collaborators, plus the small
capability interfaces the orchestrator depends on. Production adapters live
in healforge.github_client (CI provider, source control, notifications) and
healforge.llm (fix model); tests substitute deterministic fakes.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


FILE_ACTIONS = ("create", "modify", "delete")


@dataclass
class FailedStep:
    name: str
    conclusion: str
    number: int = 0


@dataclass
class FailedJob:
    """A job of a workflow run that did not succeed."""
    name: str
    conclusion: str = "failure"
    steps: list[FailedStep] = field(default_factory=list)
    job_id: Optional[int] = None

    @property
    def failed_step_names(self) -> list[str]:
        return [s.name for s in self.steps if s.conclusion == "failure"]

    @classmethod
    def from_dict(cls, data: dict) -> "FailedJob":
        return cls(
            name=data.get("name", "unknown"),
            conclusion=data.get("conclusion") or "failure",
            steps=[
                FailedStep(
                    name=s.get("name", ""),
                    conclusion=s.get("conclusion") or "",
                    number=s.get("number", 0),
                )
                for s in data.get("steps") or []
            ],
            job_id=data.get("id", data.get("job_id")),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "conclusion": self.conclusion,
            "steps": [{"name": s.name, "conclusion": s.conclusion, "number": s.number} for s in self.steps],
            "job_id": self.job_id,
        }


@dataclass
class FileChange:
    """One file edit proposed by the fix model."""
    path: str
    action: str = "modify"  # create, modify, delete
    content: Optional[str] = None
    diff: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"path": self.path, "action": self.action}
        if self.content is not None:
            data["content"] = self.content
        if self.diff is not None:
            data["diff"] = self.diff
        return data


@dataclass
class FixSuggestion:
    """A model's diagnosis of a failure and the changes it proposes."""
    analysis: str
    root_cause: str
    description: str
    files: list[FileChange] = field(default_factory=list)
    confidence: float = 0.0
    additional_notes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "analysis": self.analysis,
            "rootCause": self.root_cause,
            "suggestedFix": {
                "description": self.description,
                "files": [f.to_dict() for f in self.files],
            },
            "confidence": self.confidence,
            "additionalNotes": self.additional_notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FixSuggestion":
        fix = data.get("suggestedFix") or data.get("suggested_fix") or {}
        return cls(
            analysis=data.get("analysis", ""),
            root_cause=data.get("rootCause", data.get("root_cause", "")),
            description=fix.get("description", ""),
            files=[
                FileChange(
                    path=f["path"],
                    action=f.get("action", "modify"),
                    content=f.get("content"),
                    diff=f.get("diff"),
                )
                for f in fix.get("files") or []
            ],
            confidence=float(data.get("confidence", 0.0)),
            additional_notes=data.get("additionalNotes", data.get("additional_notes")),
        )


@dataclass
class HealRequest:
    """A failed pipeline run to heal. Manual triggers may carry no run id."""
    workflow_run_id: Optional[int]
    repo_owner: str
    repo_name: str
    commit_sha: str
    installation_id: Optional[int] = None
    failed_jobs: list[FailedJob] = field(default_factory=list)
    workflow_name: str = ""
    pull_request_numbers: list[int] = field(default_factory=list)
    head_branch: Optional[str] = None
    error_message: Optional[str] = None  # operator-supplied summary
    run_attempt: int = 1  # GitHub re-runs keep the run id and bump this

    @property
    def repo_slug(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"


# =============================================================================
# Capability interfaces
# =============================================================================

class CIProvider(Protocol):
    async def fetch_failed_job_details(self, owner: str, repo: str, run_id: int) -> list[FailedJob]:
        ...

    async def fetch_logs(self, owner: str, repo: str, run_id: int) -> str:
        ...

    async def rerun_workflow(self, owner: str, repo: str, run_id: int) -> None:
        ...


class SourceControl(Protocol):
    async def get_file_contents(self, owner: str, repo: str, path: str, ref: str) -> Optional[str]:
        ...

    async def commit_and_push(
        self, owner: str, repo: str, branch: str, base_sha: str,
        files: list[FileChange], message: str,
    ) -> str:
        """Commit the changes on top of base_sha and return the new commit SHA."""
        ...

    async def open_pull_request(
        self, owner: str, repo: str, base_branch: str, base_sha: str,
        files: list[FileChange], title: str, body: str,
    ) -> tuple[int, str]:
        """Commit the changes on a new branch and return (PR number, commit SHA)."""
        ...


class FixModel(Protocol):
    async def suggest_fix(
        self, error_summary: str, file_contents: dict[str, str], context: Optional[str] = None,
    ) -> FixSuggestion:
        ...


class Notifier(Protocol):
    async def notify_exhausted(
        self, request: HealRequest, attempts: int, max_retries: int, last_error: str,
    ) -> None:
        ...
