"""
Tests for the webhook server: signature checks, event logging and
dispatch into the orchestrator.
"""

import json

import pytest
from fastapi.testclient import TestClient

from fakes import FakeGitHub, FakeModel
from healforge.config import HealConfig, RegistryConfig
from healforge.errors import SignatureError
from healforge.server import create_app
from healforge.webhooks import parse_heal_request, sign_payload, summarize_payload, verify_signature


SECRET = "s3cret"


def workflow_run_payload(
    conclusion="failure", head_sha="abc123", run_id=42, action="completed", workflow="CI", run_attempt=1,
):
    return {
        "action": action,
        "workflow_run": {
            "id": run_id,
            "run_attempt": run_attempt,
            "name": workflow,
            "head_sha": head_sha,
            "head_branch": "main",
            "conclusion": conclusion,
            "pull_requests": [{"number": 7}],
        },
        "repository": {"name": "widgets", "owner": {"login": "octo"}},
        "installation": {"id": 99},
    }


def deliver(client, event, payload, secret=SECRET, signature=None):
    body = json.dumps(payload).encode()
    headers = {
        "X-GitHub-Event": event,
        "X-Hub-Signature-256": signature or sign_payload(secret, body),
        "Content-Type": "application/json",
    }
    return client.post("/webhook", content=body, headers=headers)


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def client(tmp_path, github):
    config = HealConfig(webhook_secret=SECRET, database_path=str(tmp_path / "healforge.db"))
    app = create_app(config, RegistryConfig(), github=github, fix_model=FakeModel())
    with TestClient(app) as test_client:
        yield test_client


# =============================================================================
# Signatures
# =============================================================================

def test_verify_signature_roundtrip():
    body = b'{"zen": "Keep it logically awesome."}'
    verify_signature(SECRET, body, sign_payload(SECRET, body))


@pytest.mark.parametrize("secret,signature", [
    (SECRET, None),
    (SECRET, "sha1=abc"),
    (SECRET, "sha256=" + "0" * 64),
    ("", "sha256=" + "0" * 64),
])
def test_verify_signature_rejects(secret, signature):
    """Missing, malformed or wrong signatures and an unset secret all fail."""
    with pytest.raises(SignatureError):
        verify_signature(secret, b"{}", signature)


# =============================================================================
# Payload helpers
# =============================================================================

def test_parse_heal_request():
    request = parse_heal_request(workflow_run_payload())

    assert request.workflow_run_id == 42
    assert request.repo_slug == "octo/widgets"
    assert request.commit_sha == "abc123"
    assert request.head_branch == "main"
    assert request.pull_request_numbers == [7]
    assert request.installation_id == 99
    assert request.run_attempt == 1
    assert parse_heal_request(workflow_run_payload(run_attempt=3)).run_attempt == 3


def test_summarize_payload():
    summary = summarize_payload("workflow_run", workflow_run_payload())

    assert summary == {"run_id": 42, "conclusion": "failure", "workflow": "CI", "head_sha": "abc123"}
    assert summarize_payload("ping", {"zen": "hi"}) == {"zen": "hi"}
    assert summarize_payload("star", {}) == {}


# =============================================================================
# HTTP
# =============================================================================

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "healforge"}


def test_unknown_route_lists_endpoints(client):
    response = client.get("/nope")

    assert response.status_code == 404
    assert "POST /webhook" in response.json()["endpoints"]


def test_webhook_requires_headers(client):
    response = client.post("/webhook", content=b"{}")

    assert response.status_code == 400


def test_webhook_rejects_bad_signature(client, github):
    """A wrong signature is rejected before anything is logged or run."""
    response = deliver(client, "workflow_run", workflow_run_payload(), secret="wrong")

    assert response.status_code == 401
    assert github.commits == []
    assert client.get("/status").json()["recent_events"] == []


def test_webhook_rejects_invalid_json(client):
    body = b"not json"
    response = client.post("/webhook", content=body, headers={
        "X-GitHub-Event": "ping",
        "X-Hub-Signature-256": sign_payload(SECRET, body),
    })

    assert response.status_code == 400


def test_ping_is_logged(client):
    response = deliver(client, "ping", {"zen": "Design for failure."})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "event": "ping"}

    (event,) = client.get("/status").json()["recent_events"]
    assert event["event_type"] == "ping"
    assert event["processed"] is True
    assert event["error"] is None


def test_failed_run_is_healed(client, github):
    """A failed workflow_run delivery ends with a fix commit and a healing row."""
    response = deliver(client, "workflow_run", workflow_run_payload())

    assert response.status_code == 200
    assert [c["sha"] for c in github.commits] == ["fix0001"]

    status = client.get("/status").json()
    (attempt,) = status["active_attempts"]
    assert attempt["commit_sha"] == "abc123"
    assert attempt["repo"] == "octo/widgets"
    assert attempt["status"] == "healing"
    assert attempt["attempt_count"] == 1

    (event,) = status["recent_events"]
    assert event["action"] == "completed"
    assert event["repo"] == "octo/widgets"
    assert event["processed"] is True


def test_success_on_fix_commit_closes_attempt(client):
    """The passing run of the fix commit marks the original commit healed."""
    deliver(client, "workflow_run", workflow_run_payload())
    deliver(client, "workflow_run", workflow_run_payload(conclusion="success", head_sha="fix0001", run_id=43))

    status = client.get("/status").json()
    assert status["active_attempts"] == []
    assert all(e["processed"] for e in status["recent_events"])


def test_in_progress_run_is_ignored(client, github):
    deliver(client, "workflow_run", workflow_run_payload(action="requested", conclusion=None))

    assert github.commits == []
    assert client.get("/status").json()["active_attempts"] == []


def test_handler_error_is_recorded(client):
    """A payload the handler cannot use is marked processed with its error."""
    payload = workflow_run_payload()
    del payload["workflow_run"]["head_sha"]

    response = deliver(client, "workflow_run", payload)

    assert response.status_code == 200
    (event,) = client.get("/status").json()["recent_events"]
    assert event["processed"] is True
    assert "KeyError" in event["error"]


def test_other_workflow_success_does_not_stop_healing(client, github):
    """A passing "Docs" run on the fix commit leaves the failing "CI" pipeline in healing."""
    deliver(client, "workflow_run", workflow_run_payload())
    deliver(client, "workflow_run", workflow_run_payload(
        conclusion="success", head_sha="fix0001", run_id=43, workflow="Docs",
    ))
    deliver(client, "workflow_run", workflow_run_payload(head_sha="fix0001", run_id=44))

    assert [c["sha"] for c in github.commits] == ["fix0001", "fix0002"]
    (attempt,) = client.get("/status").json()["active_attempts"]
    assert attempt["commit_sha"] == "abc123"
    assert attempt["workflow"] == "CI"
    assert attempt["attempt_count"] == 2

    deliver(client, "workflow_run", workflow_run_payload(conclusion="success", head_sha="fix0002", run_id=45))
    assert client.get("/status").json()["active_attempts"] == []


def test_redelivered_failure_is_healed_once(client, github):
    """GitHub redeliveries of the same run attempt do not spend budget again."""
    deliver(client, "workflow_run", workflow_run_payload())
    deliver(client, "workflow_run", workflow_run_payload())

    assert [c["sha"] for c in github.commits] == ["fix0001"]
    (attempt,) = client.get("/status").json()["active_attempts"]
    assert attempt["attempt_count"] == 1
    assert all(e["processed"] and e["error"] is None for e in client.get("/status").json()["recent_events"])


def test_rerun_attempt_is_healed_again(client, github):
    """A GitHub re-run of the same run is a new attempt, not a duplicate."""
    deliver(client, "workflow_run", workflow_run_payload())
    deliver(client, "workflow_run", workflow_run_payload(head_sha="fix0001", run_attempt=2))

    assert [c["sha"] for c in github.commits] == ["fix0001", "fix0002"]
