"""
Webhook Endpoint Tests
======================
POST /webhook, GET /health and GET /status through FastAPI's TestClient.

The app's lifespan (Docker bootstrap) is not entered: the client is used
without a context manager and a controller backed by the in-memory
provisioner is installed on app.state directly.
"""
import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from runnerctl.core.errors import ProvisioningFailure
from runnerctl.services.event_validator import sign_payload

SECRET = "webhook-test-secret"


@pytest.fixture
def client(controller):
    from main import app

    app.state.controller = controller
    with patch("runnerctl.api.webhook.WEBHOOK_SECRET", SECRET):
        yield TestClient(app)
    del app.state.controller


def _deliver(client, action, run_id=42, runner_name=None, kind="workflow_job", secret=SECRET):
    body = json.dumps({
        "action": action,
        "workflow_job": {"id": run_id, "name": "build", "runner_name": runner_name, "conclusion": None},
        "repository": {"full_name": "octo/repo", "html_url": "https://github.com/octo/repo"},
    }).encode()
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": kind,
        "X-GitHub-Delivery": f"delivery-{run_id}-{action}",
        "X-Hub-Signature-256": sign_payload(body, secret),
    }
    return client.post("/webhook", content=body, headers=headers)


# ---------------------------------------------------------------------------
# 1. Rejections and discards
# ---------------------------------------------------------------------------
def test_bad_signature_returns_401(client, provisioner):
    resp = _deliver(client, "queued", secret="wrong")
    assert resp.status_code == 401
    assert provisioner.calls == []


def test_ping_is_discarded(client, provisioner):
    resp = _deliver(client, "created", kind="ping")
    assert resp.status_code == 200
    assert resp.json()["status"] == "discarded"
    assert provisioner.calls == []


def test_unparseable_body_is_discarded(client, provisioner):
    body = b"{broken"
    resp = client.post("/webhook", content=body, headers={
        "X-GitHub-Event": "workflow_job",
        "X-Hub-Signature-256": sign_payload(body, SECRET),
    })
    assert resp.status_code == 200
    assert resp.json()["status"] == "discarded"
    assert provisioner.calls == []


# ---------------------------------------------------------------------------
# 2. Lifecycle through HTTP
# ---------------------------------------------------------------------------
def test_queued_then_completed(client, provisioner, registry):
    resp = _deliver(client, "queued")
    assert resp.status_code == 200
    assert resp.json() == {"status": "provisioned", "run_id": 42}
    assert provisioner.ops() == ["create", "start"]

    name = registry.get_run(42).runner_name
    resp = _deliver(client, "in_progress", runner_name=name)
    assert resp.json()["status"] == "status_updated"

    resp = _deliver(client, "completed", runner_name=name)
    assert resp.json() == {"status": "removed", "run_id": 42}
    assert provisioner.ops() == ["create", "start", "remove"]
    assert len(registry) == 0


def test_duplicate_queued_is_acknowledged(client, provisioner):
    _deliver(client, "queued")
    resp = _deliver(client, "queued")
    assert resp.status_code == 200
    assert resp.json()["status"] == "duplicate"
    assert provisioner.ops().count("create") == 1


def test_unknown_action_is_ignored(client, provisioner):
    resp = _deliver(client, "waiting")
    assert resp.json()["status"] == "ignored"
    assert provisioner.calls == []


def test_provisioning_failure_still_returns_200(client, provisioner):
    provisioner.fail_on.add("start")
    resp = _deliver(client, "queued")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "provisioning_failed"
    assert data["run_id"] == 42
    assert data["runner"] == "runner-0001"


def test_unexpected_controller_error_returns_200(client, controller):
    with patch.object(controller, "handle", AsyncMock(side_effect=RuntimeError("kaboom"))):
        resp = _deliver(client, "queued")
    assert resp.status_code == 200
    assert resp.json() == {"status": "error", "run_id": 42}


def test_provisioning_failure_body_from_controller(client, controller):
    failure = ProvisioningFailure("create timed out", run_id=7, runner_name=None)
    with patch.object(controller, "handle", AsyncMock(side_effect=failure)):
        resp = _deliver(client, "queued", run_id=7)
    assert resp.json() == {"status": "provisioning_failed", "run_id": 7, "runner": None}


# ---------------------------------------------------------------------------
# 3. Health and status
# ---------------------------------------------------------------------------
def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_status_reports_counts(client):
    _deliver(client, "queued", run_id=1)
    _deliver(client, "queued", run_id=2)

    data = client.get("/status").json()
    assert data["status"] == "ok"
    assert data["active_runners"] == 2
    assert data["running"] == 2
    assert data["completed"] == 0
    assert data["in_flight"] == 0
