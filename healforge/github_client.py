"""
GitHub REST Adapter
===================

httpx-based adapter for the GitHub REST API. One object serves the
orchestrator as its CI provider (jobs, logs, re-runs), its source control
(file contents, commits through the Git Data API, pull requests) and its
notifier (PR / commit comments).

Authentication uses a token (GITHUB_TOKEN) sent as a Bearer header.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from urllib.parse import quote

import httpx

from healforge.collaborators import FailedJob, FileChange, HealRequest
from healforge.config import DEFAULT_GITHUB_API_URL, HealConfig
from healforge.errors import FixApplicationFailure, HealForgeError, TransientNetworkError

logger = logging.getLogger(__name__)

MAX_JOB_LOG_CHARS = 4000
FIX_BRANCH_PREFIX = "healforge/fix"


class GitHubError(HealForgeError):
    """GitHub answered with a non-success status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class GitHubClient:
    """Service for the GitHub operations the auto-heal loop needs."""

    def __init__(
        self,
        token: str,
        api_url: str = DEFAULT_GITHUB_API_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config: HealConfig) -> "GitHubClient":
        return cls(config.github_token, config.github_api_url, config.http_timeout)

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Configured HTTP client with automatic resource cleanup."""
        async with httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "HealForge/0.1",
            },
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            yield client

    async def _request(
        self,
        method: str,
        url: str,
        *,
        expected: tuple[int, ...] = (200, 201),
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request, mapping transport failures and unexpected statuses."""
        try:
            if client is not None:
                response = await client.request(method, url, **kwargs)
            else:
                async with self._client() as c:
                    response = await c.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"GitHub request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"GitHub request failed: {method} {url}: {e}") from e

        if response.status_code not in expected:
            logger.error("GitHub API error: %s %s -> %s %s", method, url, response.status_code, response.text[:500])
            raise GitHubError(f"GitHub API error {response.status_code} for {method} {url}", response.status_code)
        return response

    # -------------------------------------------------------------------------
    # CI provider
    # -------------------------------------------------------------------------

    async def _list_jobs(self, client: httpx.AsyncClient, owner: str, repo: str, run_id: int) -> list[dict]:
        response = await self._request(
            "GET", f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs",
            params={"filter": "latest", "per_page": 100}, client=client,
        )
        return response.json().get("jobs", [])

    async def fetch_failed_job_details(self, owner: str, repo: str, run_id: int) -> list[FailedJob]:
        """Failed jobs of a run with only their failed steps."""
        async with self._client() as client:
            jobs = await self._list_jobs(client, owner, repo, run_id)

        failed = []
        for job in jobs:
            if job.get("conclusion") != "failure":
                continue
            job = dict(job)
            job["steps"] = [s for s in job.get("steps") or [] if s.get("conclusion") == "failure"]
            failed.append(FailedJob.from_dict(job))
        return failed

    async def fetch_logs(self, owner: str, repo: str, run_id: int) -> str:
        """Tail of each failed job's log, one section per job."""
        sections = []
        async with self._client() as client:
            for job in await self._list_jobs(client, owner, repo, run_id):
                if job.get("conclusion") != "failure":
                    continue
                response = await self._request(
                    "GET", f"/repos/{owner}/{repo}/actions/jobs/{job['id']}/logs", client=client,
                )
                sections.append(f"=== {job.get('name', job['id'])} ===\n{response.text[-MAX_JOB_LOG_CHARS:]}")
        return "\n\n".join(sections)

    async def rerun_workflow(self, owner: str, repo: str, run_id: int) -> None:
        await self._request("POST", f"/repos/{owner}/{repo}/actions/runs/{run_id}/rerun", expected=(201,))
        logger.info("Re-triggered %s/%s run %s", owner, repo, run_id)

    # -------------------------------------------------------------------------
    # Source control
    # -------------------------------------------------------------------------

    async def get_file_contents(self, owner: str, repo: str, path: str, ref: str) -> Optional[str]:
        """Raw file text at ref, or None when the file does not exist."""
        try:
            response = await self._request(
                "GET", f"/repos/{owner}/{repo}/contents/{quote(path)}",
                params={"ref": ref},
                headers={"Accept": "application/vnd.github.raw+json"},
            )
        except GitHubError as e:
            if e.status_code == 404:
                return None
            raise
        return response.text

    async def _create_commit(
        self, client: httpx.AsyncClient, owner: str, repo: str,
        base_sha: str, files: list[FileChange], message: str,
    ) -> str:
        """Create a commit on top of base_sha through the Git Data API."""
        base = await self._request("GET", f"/repos/{owner}/{repo}/git/commits/{base_sha}", client=client)
        base_tree = base.json()["tree"]["sha"]

        entries = []
        for change in files:
            if change.action == "delete":
                entries.append({"path": change.path, "mode": "100644", "type": "blob", "sha": None})
            elif change.content is not None:
                entries.append({"path": change.path, "mode": "100644", "type": "blob", "content": change.content})
            else:
                raise FixApplicationFailure(f"No content to write for {change.path} ({change.action})")

        tree = await self._request(
            "POST", f"/repos/{owner}/{repo}/git/trees",
            json={"base_tree": base_tree, "tree": entries}, client=client,
        )
        commit = await self._request(
            "POST", f"/repos/{owner}/{repo}/git/commits",
            json={"message": message, "tree": tree.json()["sha"], "parents": [base_sha]},
            client=client,
        )
        return commit.json()["sha"]

    async def commit_and_push(
        self, owner: str, repo: str, branch: str, base_sha: str,
        files: list[FileChange], message: str,
    ) -> str:
        async with self._client() as client:
            sha = await self._create_commit(client, owner, repo, base_sha, files, message)
            try:
                await self._request(
                    "PATCH", f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
                    json={"sha": sha, "force": False}, client=client,
                )
            except GitHubError as e:
                if e.status_code == 422:
                    raise FixApplicationFailure(f"Branch {branch} moved past {base_sha[:7]}") from e
                raise
        logger.info("Pushed fix %s to %s/%s:%s", sha[:7], owner, repo, branch)
        return sha

    async def open_pull_request(
        self, owner: str, repo: str, base_branch: str, base_sha: str,
        files: list[FileChange], title: str, body: str,
    ) -> tuple[int, str]:
        branch = f"{FIX_BRANCH_PREFIX}-{base_sha[:7]}-{int(time.time())}"
        async with self._client() as client:
            sha = await self._create_commit(client, owner, repo, base_sha, files, title)
            await self._request(
                "POST", f"/repos/{owner}/{repo}/git/refs",
                json={"ref": f"refs/heads/{branch}", "sha": sha}, client=client,
            )
            pr = await self._request(
                "POST", f"/repos/{owner}/{repo}/pulls",
                json={"title": title, "head": branch, "base": base_branch, "body": body},
                client=client,
            )
        number = pr.json()["number"]
        logger.info("Opened PR #%s for fix %s", number, sha[:7])
        return number, sha

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def create_pr_comment(self, owner: str, repo: str, pr_number: int, body: str) -> int:
        response = await self._request(
            "POST", f"/repos/{owner}/{repo}/issues/{pr_number}/comments", json={"body": body},
        )
        return response.json()["id"]

    async def create_commit_comment(self, owner: str, repo: str, commit_sha: str, body: str) -> int:
        response = await self._request(
            "POST", f"/repos/{owner}/{repo}/commits/{commit_sha}/comments", json={"body": body},
        )
        return response.json()["id"]

    async def notify_exhausted(
        self, request: HealRequest, attempts: int, max_retries: int, last_error: str,
    ) -> None:
        """Comment on the run's pull requests, or on the commit when there are none."""
        body = format_exhausted_comment(attempts, max_retries, last_error)
        owner, repo = request.repo_owner, request.repo_name
        if request.pull_request_numbers:
            for number in request.pull_request_numbers:
                await self.create_pr_comment(owner, repo, number, body)
        else:
            await self.create_commit_comment(owner, repo, request.commit_sha, body)


def format_exhausted_comment(attempts: int, max_retries: int, last_error: str) -> str:
    return (
        "## ⚠️ Auto-Heal Exhausted\n\n"
        f"After {attempts} of {max_retries} attempts, the pipeline still fails. "
        "Manual intervention required.\n\n"
        f"Last error:\n```\n{last_error[:2000]}\n```"
    )
