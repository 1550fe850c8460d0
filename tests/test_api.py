"""
Tests for the Flask API (in-process test client, Celery dispatch disabled)
"""

import random

import pytest

from relpulse import api, config
from relpulse.notifications import Notifier
from relpulse.pipeline import build_pipeline

from conftest import DAY, FakeRemote, make_analysis


class FakeRedis:
    def ping(self):
        return True


@pytest.fixture
def pipeline(tmp_path, clock, monkeypatch):
    db_path = tmp_path / "api.db"
    monkeypatch.setattr(config, "DB_PATH", db_path)
    monkeypatch.setattr(config, "ASYNC_PROCESSING", False)
    monkeypatch.setattr(api, "get_redis_client", lambda max_retries=0: FakeRedis())

    pipeline = build_pipeline(
        db_path=db_path,
        remote_client=FakeRemote(clock),
        clock=clock,
        rng=random.Random(1),
        notifier=Notifier(publish=False, clock=clock),
        restore=False,
    )
    store = pipeline.store
    store.add_user("user-1")
    store.add_relationship("rel-1", "user-1", "Sam")
    store.add_entry("e0", "user-1", "We talked it through and I feel grateful", relationship_id="rel-1",
                    created_at=clock())
    monkeypatch.setattr(api, "pipeline", pipeline)
    yield pipeline
    pipeline.shutdown()


@pytest.fixture
def client(pipeline):
    api.app.config["TESTING"] = True
    return api.app.test_client()


# ============================================================================
# Analysis requests
# ============================================================================

def test_analyze_entry_queues(client):
    response = client.post("/api/entries/e0/analyze", json={"priority": "urgent"})
    assert response.status_code == 202
    assert response.get_json() == {"status": "queued", "entry_id": "e0", "priority": "urgent"}

    again = client.post("/api/entries/e0/analyze")
    assert again.status_code == 200
    assert again.get_json()["reason"] == "already queued"


def test_analyze_entry_errors(client):
    assert client.post("/api/entries/e0/analyze", json={"priority": "asap"}).status_code == 400
    assert client.post("/api/entries/missing/analyze").status_code == 404


def test_analyze_rejected_when_full(client, pipeline, clock):
    pipeline.queue.max_size = 1
    pipeline.store.add_entry("e1", "user-1", "more", relationship_id="rel-1", created_at=clock())
    client.post("/api/entries/e0/analyze")

    response = client.post("/api/entries/e1/analyze")
    assert response.status_code == 503
    assert response.get_json()["reason"] == "queue full"


def test_request_status(client, pipeline):
    assert client.get("/api/requests/e0").status_code == 404

    client.post("/api/entries/e0/analyze")
    body = client.get("/api/requests/e0").get_json()
    assert body["request"]["status"] == "queued"
    assert body["analysis"] is None

    pipeline.scheduler.process_next()
    body = client.get("/api/requests/e0").get_json()
    assert body["request"]["status"] == "completed"
    assert body["analysis"]["source"] == "remote"


def test_cancel_request(client):
    assert client.post("/api/requests/e0/cancel").status_code == 404

    client.post("/api/entries/e0/analyze")
    response = client.post("/api/requests/e0/cancel", json={"reason": "duplicate"})
    assert response.status_code == 200
    assert response.get_json()["request"]["cancel_reason"] == "duplicate"

    assert client.post("/api/requests/e0/cancel").status_code == 409


def test_retry_failed(client):
    assert client.post("/api/requests/retry", json={"entry_ids": "e0"}).status_code == 400

    client.post("/api/entries/e0/analyze")
    client.post("/api/requests/e0/cancel")
    body = client.post("/api/requests/retry", json={"entry_ids": ["e0"], "include_cancelled": True}).get_json()
    assert body["requeued"] == ["e0"]
    assert body["limit"] == config.BULK_RETRY_LIMIT


def test_queue_stats(client):
    client.post("/api/entries/e0/analyze")
    body = client.get("/api/queue/stats").get_json()
    assert body["queue"]["total_queued"] == 1
    assert body["circuit_breaker"]["state"] == "closed"
    assert body["store"]["tables"]["entries"] == 1


# ============================================================================
# Health scores
# ============================================================================

def test_health_score_lifecycle(client, pipeline, clock):
    assert client.get("/api/relationships/rel-1/health-score").status_code == 404

    insufficient = client.post("/api/relationships/rel-1/health-score/recalculate").get_json()
    assert insufficient["success"] is False
    assert insufficient["analyses_found"] == 0

    pipeline.store.save_analysis(make_analysis("a1", created_at=clock() - DAY))
    pipeline.store.save_analysis(make_analysis("a2", created_at=clock()))
    body = client.post("/api/relationships/rel-1/health-score/recalculate").get_json()
    assert body["success"] is True
    assert body["health_score"]["score"] == 58

    stored = client.get("/api/relationships/rel-1/health-score").get_json()
    assert stored["score"] == 58
    assert stored["is_stale"] is False

    summary = client.get("/api/users/user-1/health-summary").get_json()
    assert summary["total_relationships"] == 1
    assert summary["average_score"] == 58


# ============================================================================
# Health check
# ============================================================================

def test_health_ok(client):
    response = client.get("/health")
    body = response.get_json()
    assert response.status_code == 200
    assert body["status"] == "ok"
    assert body["components"]["redis"]["status"] == "up"
    assert body["components"]["db"]["status"] == "up"
    assert body["components"]["celery"]["status"] == "unknown"


def test_health_degraded_without_redis(client, monkeypatch):
    monkeypatch.setattr(api, "get_redis_client", lambda max_retries=0: None)
    response = client.get("/health")
    assert response.status_code == 503
    assert response.get_json()["status"] == "degraded"


def test_health_degraded_when_breaker_open(client, pipeline):
    for _ in range(5):
        pipeline.breaker.record_failure()
    response = client.get("/health")
    assert response.status_code == 503
    assert response.get_json()["components"]["circuit_breaker"]["state"] == "open"
