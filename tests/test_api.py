import asyncio

import pytest
from fastapi.testclient import TestClient

from snaprun import __version__
from snaprun.api import create_app
from snaprun.models import SuggestionRecord, utcnow_iso


@pytest.fixture
def client(config):
    return TestClient(create_app(config))


def _start(client, repo, command, **extra):
    payload = {"repoPathOnHost": str(repo), "command": command}
    payload.update(extra)
    return client.post("/runs/start", json=payload)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["version"] == __version__


def test_failed_run_is_browsable(client, repo):
    response = _start(client, repo, "echo 'Error: boom' >&2; exit 1")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "failed"
    run_id = body["runId"]

    record = client.get(f"/runs/{run_id}").json()
    assert record["runId"] == run_id
    assert record["status"] == "failed"
    assert record["runResult"]["code"] == 1

    listing = client.get("/runs").json()
    assert [item["id"] for item in listing["results"]] == [run_id]
    assert client.get("/results").json() == listing

    logs = client.get(f"/runs/{run_id}/logs").json()
    assert set(logs["logs"]) == {"stdout", "stderr"}
    stderr = client.get(f"/runs/{run_id}/logs", params={"name": "stderr"})
    assert stderr.status_code == 200
    assert "Error: boom" in stderr.text
    assert client.get(f"/runs/{run_id}/logs", params={"name": "missing"}).status_code == 404

    timeline = client.get(f"/runs/{run_id}/timeline")
    assert "run.create" in timeline.text
    assert "sandbox.run" in timeline.text
    events = client.get(f"/runs/{run_id}/timeline.json").json()
    assert events[0]["step"] == "run.create"
    assert client.get(f"/runs/{run_id}/timeline.json", params={"phase": "fix"}).status_code == 404

    metrics = client.get(f"/runs/{run_id}/metrics").json()
    assert metrics["runId"] == run_id

    assert client.get(f"/runs/{run_id}/diff").status_code == 404
    assert client.get(f"/runs/{run_id}/patch").status_code == 404

    verify = client.post(f"/runs/{run_id}/verify")
    assert verify.status_code == 200
    assert verify.json()["status"] == "failed"


def test_snap_alias_and_no_fix_needed(client, repo):
    response = client.post("/snap", json={"repoPathOnHost": str(repo), "command": "true", "mode": "direct"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "finished"
    assert body["runResult"]["mode"] == "direct"

    fix = client.post(f"/runs/{body['runId']}/fix", json={})
    assert fix.status_code == 200
    assert fix.json()["status"] == "no_fix_needed"


def test_request_validation(client, repo):
    missing = client.post("/runs/start", json={"command": "true"})
    assert missing.status_code == 400
    assert missing.json()["error"] == "repoPathOnHost and command are required"

    invalid = client.post("/runs/start", json={"repoPathOnHost": str(repo), "command": "true", "timeoutMs": -5})
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "invalid_request"

    blocked = _start(client, repo, "rm -rf /")
    assert blocked.status_code == 400
    assert blocked.json()["code"] == "COMMAND_BLOCKED"


def test_unknown_and_malformed_run_ids(client):
    missing = client.get("/runs/zzzz-000000")
    assert missing.status_code == 404
    assert missing.json() == {"ok": False, "error": "run not found", "runId": "zzzz-000000"}

    assert client.get("/runs/not_a_run").status_code == 400
    assert client.get("/runs/abc-def%0A").status_code == 400
    assert client.get("/runs/zzzz-000000/logs", params={"name": "a b"}).status_code == 400
    assert client.post("/runs/zzzz-000000/fix").status_code == 404
    assert client.post("/runs/zzzz-000000/generate").status_code == 404


def test_timeout_run_reports_gateway_timeout(client, repo):
    response = _start(client, repo, "sleep 5", timeoutMs=1000)
    assert response.status_code == 504
    body = response.json()
    assert body["status"] == "timeout"
    fix = client.post(f"/runs/{body['runId']}/fix")
    assert fix.status_code == 409


def test_analyze(client):
    response = client.post("/analyze", json={"logs": "Error: boom"})
    assert response.status_code == 200
    assert response.json()["analysis"]["errorDetected"] is True

    empty = client.post("/analyze", json={})
    assert empty.status_code == 400
    assert empty.json() == {"ok": False, "error": "missing logs"}


def test_api_key_required_when_configured(config, repo):
    config.server.api_key = "s3cret"
    client = TestClient(create_app(config))

    assert client.get("/health").status_code == 200
    denied = client.get("/runs")
    assert denied.status_code == 401
    assert denied.json()["ok"] is False
    assert client.get("/runs", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/runs", headers={"X-API-Key": "s3cret"}).status_code == 200


def test_apply_route_previews_then_writes(client, repo):
    run_id = _start(client, repo, "echo 'Error: boom' >&2; exit 1").json()["runId"]
    store = client.app.state.orchestrator.store
    patch_path = asyncio.run(store.save_patch(run_id, [{"files": [{"path": "hello.txt", "after": "patched\n"}]}]))

    def _mark(record):
        record.suggestion = SuggestionRecord(available=True, path=patch_path, generated_at=utcnow_iso())

    asyncio.run(store.update_run(run_id, _mark))

    preview = client.post(f"/runs/{run_id}/apply")
    assert preview.status_code == 200
    assert preview.json()["willApply"] == ["hello.txt"]
    assert (repo / "hello.txt").read_text() == "hello\n"

    applied = client.post(f"/runs/{run_id}/apply", json={"apply": True})
    assert applied.status_code == 200
    assert applied.json()["applied"] == ["hello.txt"]
    assert (repo / "hello.txt").read_text() == "patched\n"
    assert client.get(f"/runs/{run_id}").json()["applied"]["files"] == ["hello.txt"]
    assert client.post("/runs/zzzz-000000/apply").status_code == 404
