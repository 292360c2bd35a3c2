"""Tests for the Flask trigger server."""

from unittest import mock

import pytest

from opportunity_engine import trigger_server
from opportunity_engine.errors import HuntNotFoundError, StoreError


@pytest.fixture
def pipeline(monkeypatch):
    stub = mock.Mock()
    monkeypatch.setattr(trigger_server, "get_pipeline", lambda: stub)
    return stub


@pytest.fixture
def client():
    trigger_server.app.config["TESTING"] = True
    return trigger_server.app.test_client()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_rebuild_hunt(client, pipeline):
    pipeline.rebuild_hunt.return_value = {"hunt_id": "h1", "BUY": 1}
    response = client.post("/hunts/h1/rebuild")

    assert response.status_code == 200
    assert response.get_json() == {"ok": True, "hunt_id": "h1", "BUY": 1}
    pipeline.rebuild_hunt.assert_called_once_with("h1")


def test_unknown_hunt_is_404(client, pipeline):
    pipeline.rebuild_hunt.side_effect = HuntNotFoundError("h9")
    response = client.post("/hunts/h9/rebuild")
    assert response.status_code == 404
    assert response.get_json()["ok"] is False


def test_store_failure_is_503(client, pipeline):
    pipeline.run_due_hunts.side_effect = StoreError("get_due_hunts", ConnectionError("refused"))
    response = client.post("/hunts/rebuild-due")

    assert response.status_code == 503
    assert response.get_json()["operation"] == "get_due_hunts"


def test_verify_passes_optional_limits(client, pipeline):
    pipeline.run_verification.return_value = {"verified": 0}
    response = client.post("/verify", json={"limit": "25", "concurrency": "bogus"})

    assert response.status_code == 200
    pipeline.run_verification.assert_called_once_with(limit=25, concurrency=None)


def test_crawl_run(client, pipeline):
    pipeline.ingest_crawl_run.return_value = {"source": "pickles", "new": 1}
    response = client.post("/crawl-runs/pickles", json={"listings": [{"id": "1"}, "junk"]})

    assert response.status_code == 200
    pipeline.ingest_crawl_run.assert_called_once_with("pickles", [{"id": "1"}], succeeded=True, error=None)


def test_crawl_run_rejects_non_list(client, pipeline):
    response = client.post("/crawl-runs/pickles", json={"listings": "nope"})
    assert response.status_code == 400
    pipeline.ingest_crawl_run.assert_not_called()
