"""Tests for webhook and cron endpoints."""

import json

import pytest
from fastapi.testclient import TestClient

from api.src.db.database import get_db
from api.src.main import app
from api.src.models.event import EventKind
from api.src.routes import pipelines, webhooks

async def _no_db():
    yield None

@pytest.fixture
def processed(monkeypatch):
    """Capture process_event calls instead of cloning repositories."""
    calls = []

    async def fake_process_event(db, repo_info, event):
        calls.append((repo_info, event))
        return {"status": "queued", "runs": []}

    monkeypatch.setattr(webhooks, "process_event", fake_process_event)
    monkeypatch.setattr(pipelines, "process_event", fake_process_event)
    app.dependency_overrides[get_db] = _no_db
    yield calls
    app.dependency_overrides.clear()

def post_webhook(client, event, payload):
    return client.post(
        "/api/webhooks/github",
        content=json.dumps(payload),
        headers={"X-GitHub-Event": event, "Content-Type": "application/json"},
    )

def test_ping(processed):
    response = post_webhook(TestClient(app), "ping", {"zen": "Keep it logically awesome."})
    assert response.json()["status"] == "pong"
    assert processed == []

def test_unhandled_event_is_ignored(processed):
    response = post_webhook(TestClient(app), "issues", {"action": "opened"})
    assert response.json()["status"] == "ignored"
    assert processed == []

def test_invalid_json(processed):
    response = TestClient(app).post(
        "/api/webhooks/github",
        content=b"{not json",
        headers={"X-GitHub-Event": "push"},
    )
    assert response.status_code == 400

def test_push_webhook(processed):
    payload = {
        "ref": "refs/heads/master",
        "after": "abc123",
        "repository": {
            "name": "repo",
            "full_name": "org/repo",
            "clone_url": "https://github.com/org/repo.git",
        },
        "pusher": {"name": "dev"},
    }

    response = post_webhook(TestClient(app), "push", payload)

    assert response.json()["status"] == "queued"
    repo_info, event = processed[0]
    assert repo_info["commit_sha"] == "abc123"
    assert event.kind == EventKind.PUSH
    assert event.branch == "master"

def test_push_without_commit_is_skipped(processed):
    payload = {"ref": "refs/heads/master", "repository": {}}

    response = post_webhook(TestClient(app), "push", payload)

    assert response.json()["status"] == "skipped"
    assert processed == []

def test_cron_endpoint(processed):
    response = TestClient(app).post(
        "/api/pipelines/cron",
        json={"repository_url": "https://github.com/org/repo.git", "cron": "nightly"},
    )

    assert response.status_code == 200
    repo_info, event = processed[0]
    assert repo_info["repo_full_name"] == "org/repo"
    assert repo_info["branch"] == "main"
    assert event.kind == EventKind.CRON
    assert event.cron == "nightly"
