"""
Tests for the GitHub REST adapter against a mocked API.
"""

import json

import httpx
import pytest

from healforge.collaborators import FileChange, HealRequest
from healforge.errors import FixApplicationFailure, TransientNetworkError
from healforge.github_client import GitHubClient, GitHubError, format_exhausted_comment


JOBS = {
    "jobs": [
        {
            "id": 1, "name": "build", "conclusion": "success",
            "steps": [{"name": "Compile", "conclusion": "success", "number": 1}],
        },
        {
            "id": 2, "name": "lint", "conclusion": "failure",
            "steps": [
                {"name": "Install", "conclusion": "success", "number": 1},
                {"name": "Run lint", "conclusion": "failure", "number": 2},
            ],
        },
    ]
}


class FakeGitHubAPI:
    """Routes requests by (method, path) and records them."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "Not Found"})
        if isinstance(handler, httpx.Response):
            return handler
        return handler(request)

    def bodies(self, method, path):
        return [json.loads(r.content) for r in self.requests if r.method == method and r.url.path == path]


def make_client(routes):
    api = FakeGitHubAPI(routes)
    return GitHubClient("ghp_test", "https://api.github.test", transport=httpx.MockTransport(api)), api


# =============================================================================
# CI provider
# =============================================================================

@pytest.mark.asyncio
async def test_fetch_failed_job_details():
    client, api = make_client({("GET", "/repos/octo/widgets/actions/runs/42/jobs"): httpx.Response(200, json=JOBS)})

    jobs = await client.fetch_failed_job_details("octo", "widgets", 42)

    assert [j.name for j in jobs] == ["lint"]
    assert jobs[0].failed_step_names == ["Run lint"]
    assert jobs[0].job_id == 2
    assert api.requests[0].headers["Authorization"] == "Bearer ghp_test"


@pytest.mark.asyncio
async def test_fetch_logs_tails_failed_jobs():
    long_log = "x" * 5000 + "\nsrc/app.ts:1:1 error"
    client, _ = make_client({
        ("GET", "/repos/octo/widgets/actions/runs/42/jobs"): httpx.Response(200, json=JOBS),
        ("GET", "/repos/octo/widgets/actions/jobs/2/logs"): httpx.Response(200, text=long_log),
    })

    logs = await client.fetch_logs("octo", "widgets", 42)

    assert logs.startswith("=== lint ===\n")
    assert logs.endswith("src/app.ts:1:1 error")
    assert len(logs) < 4100


@pytest.mark.asyncio
async def test_rerun_workflow():
    client, api = make_client({("POST", "/repos/octo/widgets/actions/runs/42/rerun"): httpx.Response(201)})

    await client.rerun_workflow("octo", "widgets", 42)

    assert len(api.requests) == 1


@pytest.mark.asyncio
async def test_rerun_rejected_raises():
    client, _ = make_client({("POST", "/repos/octo/widgets/actions/runs/42/rerun"): httpx.Response(403)})

    with pytest.raises(GitHubError) as exc_info:
        await client.rerun_workflow("octo", "widgets", 42)
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def timeout(request):
        raise httpx.ConnectTimeout("timed out")

    client, _ = make_client({("POST", "/repos/octo/widgets/actions/runs/42/rerun"): timeout})

    with pytest.raises(TransientNetworkError):
        await client.rerun_workflow("octo", "widgets", 42)


# =============================================================================
# Source control
# =============================================================================

@pytest.mark.asyncio
async def test_get_file_contents():
    client, api = make_client({
        ("GET", "/repos/octo/widgets/contents/src/app.ts"): httpx.Response(200, text="export {};\n"),
    })

    assert await client.get_file_contents("octo", "widgets", "src/app.ts", "abc123") == "export {};\n"
    assert api.requests[0].url.params["ref"] == "abc123"
    assert await client.get_file_contents("octo", "widgets", "missing.ts", "abc123") is None


def git_data_routes(ref_status=200):
    return {
        ("GET", "/repos/octo/widgets/git/commits/abc123"): httpx.Response(200, json={"sha": "abc123", "tree": {"sha": "tree0"}}),
        ("POST", "/repos/octo/widgets/git/trees"): httpx.Response(201, json={"sha": "tree1"}),
        ("POST", "/repos/octo/widgets/git/commits"): httpx.Response(201, json={"sha": "fix0001"}),
        ("PATCH", "/repos/octo/widgets/git/refs/heads/main"): httpx.Response(ref_status, json={}),
        ("POST", "/repos/octo/widgets/git/refs"): httpx.Response(201, json={}),
        ("POST", "/repos/octo/widgets/pulls"): httpx.Response(201, json={"number": 12}),
    }


FILES = [FileChange("src/app.ts", "modify", "export {};\n"), FileChange("src/old.ts", "delete")]


@pytest.mark.asyncio
async def test_commit_and_push():
    """The fix becomes a commit on the base SHA and the branch fast-forwards to it."""
    client, api = make_client(git_data_routes())

    sha = await client.commit_and_push("octo", "widgets", "main", "abc123", FILES, "fix: lint")

    assert sha == "fix0001"
    (tree,) = api.bodies("POST", "/repos/octo/widgets/git/trees")
    assert tree["base_tree"] == "tree0"
    assert tree["tree"][0]["content"] == "export {};\n"
    assert tree["tree"][1]["sha"] is None
    (commit,) = api.bodies("POST", "/repos/octo/widgets/git/commits")
    assert commit["parents"] == ["abc123"]
    (ref,) = api.bodies("PATCH", "/repos/octo/widgets/git/refs/heads/main")
    assert ref == {"sha": "fix0001", "force": False}


@pytest.mark.asyncio
async def test_commit_on_moved_branch_fails():
    client, _ = make_client(git_data_routes(ref_status=422))

    with pytest.raises(FixApplicationFailure):
        await client.commit_and_push("octo", "widgets", "main", "abc123", FILES, "fix: lint")


@pytest.mark.asyncio
async def test_change_without_content_fails():
    client, _ = make_client(git_data_routes())

    with pytest.raises(FixApplicationFailure):
        await client.commit_and_push("octo", "widgets", "main", "abc123", [FileChange("a.ts", "modify")], "fix")


@pytest.mark.asyncio
async def test_open_pull_request():
    client, api = make_client(git_data_routes())

    number, sha = await client.open_pull_request("octo", "widgets", "main", "abc123", FILES, "fix: lint", "body")

    assert (number, sha) == (12, "fix0001")
    (ref,) = api.bodies("POST", "/repos/octo/widgets/git/refs")
    assert ref["ref"].startswith("refs/heads/healforge/fix-abc123-")
    (pr,) = api.bodies("POST", "/repos/octo/widgets/pulls")
    assert pr["base"] == "main"
    assert pr["head"] == ref["ref"][len("refs/heads/"):]


# =============================================================================
# Notifications
# =============================================================================

@pytest.mark.asyncio
async def test_notify_exhausted_comments_on_pull_requests():
    client, api = make_client({
        ("POST", "/repos/octo/widgets/issues/7/comments"): httpx.Response(201, json={"id": 1}),
    })
    request = HealRequest(42, "octo", "widgets", "abc123", pull_request_numbers=[7])

    await client.notify_exhausted(request, 10, 10, "lint failed")

    (comment,) = api.bodies("POST", "/repos/octo/widgets/issues/7/comments")
    assert "After 10 of 10 attempts" in comment["body"]
    assert "lint failed" in comment["body"]


@pytest.mark.asyncio
async def test_notify_exhausted_falls_back_to_commit_comment():
    client, api = make_client({
        ("POST", "/repos/octo/widgets/commits/abc123/comments"): httpx.Response(201, json={"id": 2}),
    })
    request = HealRequest(42, "octo", "widgets", "abc123")

    await client.notify_exhausted(request, 3, 10, "build failed")

    assert len(api.bodies("POST", "/repos/octo/widgets/commits/abc123/comments")) == 1


def test_exhausted_comment_truncates_error():
    body = format_exhausted_comment(10, 10, "e" * 5000)

    assert "Manual intervention required" in body
    assert body.count("e" * 2000) == 1
    assert "e" * 2001 not in body
