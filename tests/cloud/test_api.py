# tests/cloud/test_api.py
"""Publishing pipeline reports and answering cross-pipeline polls."""
import uuid

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("aiosqlite")


def report(status="succeeded", *, project="group/lib", ref="main", jobs=None):
    return {
        "id": uuid.uuid4().hex[:12],
        "project": project,
        "ref": ref,
        "sha": "abc123",
        "status": status,
        "jobs": jobs if jobs is not None else [
            {
                "name": "package",
                "stage": "build",
                "state": "succeeded",
                "attempts": 1,
                "artifact": {"project": project, "job": "package", "ref": ref, "sha": "abc123"},
            },
            {"name": "unit", "stage": "test", "state": "failed", "attempts": 2, "failure": "script_failure"},
        ],
    }


def test_publish_and_fetch(client):
    body = report()
    r = client.post("/pipelines", json=body)
    assert r.status_code == 201
    assert r.json() == {"id": body["id"], "jobs": 2}

    r = client.get(f"/pipelines/{body['id']}")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "succeeded"
    assert [j["name"] for j in data["jobs"]] == ["package", "unit"]
    assert data["jobs"][1]["failure"] == "script_failure"


def test_duplicate_publish_conflicts(client):
    body = report()
    assert client.post("/pipelines", json=body).status_code == 201
    assert client.post("/pipelines", json=body).status_code == 409


def test_only_finished_pipelines_are_published(client):
    assert client.post("/pipelines", json=report(status="running")).status_code == 400


def test_unknown_pipeline(client):
    assert client.get("/pipelines/does-not-exist").status_code == 404


def test_poll_latest_job(client):
    project, ref = "group/poll", "release/1.x"
    client.post("/pipelines", json=report(project=project, ref=ref))

    r = client.get("/projects/group%2Fpoll/refs/release%2F1.x/jobs/package")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "succeeded"
    assert data["artifacts_available"] is True
    assert data["artifact_keys"] == [{"project": project, "job": "package", "ref": ref, "sha": "abc123"}]

    # a newer run of the same job replaces the answer
    newer = report(project=project, ref=ref, jobs=[{"name": "package", "state": "failed"}], status="failed")
    client.post("/pipelines", json=newer)
    data = client.get(f"/projects/{project}/refs/{ref}/jobs/package").json()
    assert data["status"] == "failed"
    assert data["artifacts_available"] is False
    assert data["pipeline_id"] == newer["id"]


def test_poll_unknown_job(client):
    r = client.get("/projects/group%2Flib/refs/main/jobs/ghost")
    assert r.status_code == 404
