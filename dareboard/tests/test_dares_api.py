"""
HTTP surface: auth, error contract, dares, completions, engagements and
the cleanup trigger.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from dareboard.core.config import settings
from dareboard.features.dares.store import dare_store
from dareboard.features.dares.timeutils import utc_now
from dareboard.main import app
from dareboard.tests.mocks import make_dare

client = TestClient(app)

ALICE = {"X-User-Id": "alice", "X-User-Name": "Alice"}
BOB = {"X-User-Id": "bob", "X-User-Name": "Bob"}


def _create(headers=ALICE, **overrides):
    body = {"title": "Dance in the rain", "description": "Film it", "vibe": "Happy", "hashtag": "#rain"}
    body.update(overrides)
    return client.post("/v1/dares", json=body, headers=headers)


@pytest.fixture
def dare():
    resp = _create()
    assert resp.status_code == 201
    return resp.json()["dare"]


class TestAuth:
    def test_missing_identity_is_401(self):
        resp = client.post("/v1/dares", json={"title": "t", "description": "d", "vibe": "Bold"})
        assert resp.status_code == 401
        body = resp.json()
        assert body["error"]["code"] == "authentication_required"
        assert body["error"]["request_id"] == resp.headers["x-request-id"]

    def test_bearer_token(self, monkeypatch):
        monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "test-secret")
        token = jwt.encode(
            {"sub": "jwt-user", "name": "Jay", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            "test-secret",
            algorithm="HS256",
        )
        resp = _create(headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 201
        dare = resp.json()["dare"]
        assert dare["creator_id"] == "jwt-user"
        assert dare["creator"]["display_name"] == "Jay"

    def test_bad_bearer_token(self, monkeypatch):
        monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "test-secret")
        token = jwt.encode({"sub": "mallory"}, "wrong-secret", algorithm="HS256")
        resp = _create(headers={"Authorization": f"Bearer {token}", "X-User-Id": "mallory"})
        assert resp.status_code == 401

    def test_expired_bearer_token(self, monkeypatch):
        monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "test-secret")
        token = jwt.encode(
            {"sub": "late", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            "test-secret",
            algorithm="HS256",
        )
        resp = _create(headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Token expired"


class TestDares:
    def test_create_and_fetch(self, dare):
        assert dare["hashtag"] == "rain"
        assert dare["creator"]["display_name"] == "Alice"
        assert dare["time_remaining"]["label"].endswith("left")

        resp = client.get(f"/v1/dares/{dare['id']}")
        assert resp.status_code == 200
        assert resp.json()["dare"]["title"] == "Dance in the rain"

    def test_create_validation_error_shape(self):
        resp = _create(title="")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_create_expiry_too_soon(self):
        soon = (datetime.now(timezone.utc) + timedelta(minutes=10)).isoformat()
        assert _create(expiry_date=soon).status_code == 400

    def test_missing_dare_404(self):
        resp = client.get("/v1/dares/does-not-exist")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_sections(self, dare):
        new = client.get("/v1/dares", params={"section": "new"})
        assert new.status_code == 200
        assert [d["id"] for d in new.json()["dares"]] == [dare["id"]]

        trending = client.get("/v1/dares")
        assert trending.json()["section"] == "trending"

        # Three days out is not expiring soon
        expiring = client.get("/v1/dares", params={"section": "expiring"})
        assert expiring.json()["dares"] == []

        assert client.get("/v1/dares", params={"section": "hot"}).status_code == 422

    def test_delete_creator_only(self, dare):
        assert client.delete(f"/v1/dares/{dare['id']}", headers=BOB).status_code == 403
        resp = client.delete(f"/v1/dares/{dare['id']}", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["deleted"] is True
        assert client.get(f"/v1/dares/{dare['id']}").status_code == 404


class TestCompletions:
    def test_complete_and_list(self, dare):
        resp = client.post(
            f"/v1/dares/{dare['id']}/complete",
            json={"media_urls": ["https://cdn.example.com/a.jpg"], "caption": "soaked"},
            headers=BOB,
        )
        assert resp.status_code == 201
        completion = resp.json()["completed_dare"]
        assert completion["completer"]["display_name"] == "Bob"

        again = client.post(f"/v1/dares/{dare['id']}/complete", json={"media_urls": ["x"]}, headers=BOB)
        assert again.status_code == 409

        listed = client.get("/v1/dares/completed").json()["completed_dares"]
        assert [c["id"] for c in listed] == [completion["id"]]
        assert listed[0]["dare"]["title"] == "Dance in the rain"

        detail = client.get(f"/v1/dares/{dare['id']}").json()["dare"]
        assert detail["completion_count"] == 1

    def test_deleted_dare_leaves_feed(self, dare):
        client.post(f"/v1/dares/{dare['id']}/complete", json={"media_urls": ["a"]}, headers=BOB)
        assert len(client.get("/v1/dares/completed").json()["completed_dares"]) == 1

        assert client.delete(f"/v1/dares/{dare['id']}", headers=ALICE).status_code == 200

        assert client.get("/v1/dares/completed").json()["completed_dares"] == []
        assert client.get("/v1/dares/trending/completions").json()["completed_dares"] == []

    def test_media_required(self, dare):
        resp = client.post(f"/v1/dares/{dare['id']}/complete", json={"media_urls": []}, headers=BOB)
        assert resp.status_code == 400


class TestEngagements:
    def test_smile_toggle(self, dare):
        body = {"dare_id": dare["id"], "engagement_type": "smile"}
        created = client.post("/v1/dares/engagements", json=body, headers=BOB)
        assert created.status_code == 201
        assert created.json()["engagement"]["author"]["display_name"] == "Bob"

        assert client.post("/v1/dares/engagements", json=body, headers=BOB).status_code == 409

        params = {"dare_id": dare["id"], "engagement_type": "smile"}
        first = client.delete("/v1/dares/engagements", params=params, headers=BOB)
        second = client.delete("/v1/dares/engagements", params=params, headers=BOB)
        assert first.json() == {"deleted": True}
        assert second.status_code == 200
        assert second.json() == {"deleted": False}

        assert client.get(f"/v1/dares/{dare['id']}").json()["dare"]["smile_count"] == 0

    def test_target_must_be_exactly_one(self, dare):
        resp = client.post(
            "/v1/dares/engagements",
            json={"dare_id": dare["id"], "completed_dare_id": "c", "engagement_type": "smile"},
            headers=BOB,
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Must specify either dare_id or completed_dare_id"

    def test_comments(self, dare):
        for text in ("first!", "second"):
            client.post(
                "/v1/dares/engagements",
                json={"dare_id": dare["id"], "engagement_type": "comment", "content": text},
                headers=BOB,
            )
        resp = client.get("/v1/dares/engagements/comments", params={"dare_id": dare["id"]})
        assert resp.status_code == 200
        contents = [c["content"] for c in resp.json()["comments"]]
        assert sorted(contents) == ["first!", "second"]

    def test_trending_completions(self, dare):
        completion = client.post(
            f"/v1/dares/{dare['id']}/complete", json={"media_urls": ["a"]}, headers=BOB
        ).json()["completed_dare"]
        client.post(
            "/v1/dares/engagements",
            json={"completed_dare_id": completion["id"], "engagement_type": "smile"},
            headers=ALICE,
        )
        resp = client.get("/v1/dares/trending/completions")
        items = resp.json()["completed_dares"]
        assert items[0]["id"] == completion["id"]
        assert items[0]["smile_count"] == 1


class TestCleanup:
    def test_cleanup_runs_sweep(self):
        stale = make_dare(utc_now() - timedelta(days=4))
        resp = client.post("/v1/dares/cleanup")
        assert resp.status_code == 200
        body = resp.json()
        assert body["expiredDares"] == 1
        assert body["lowEngagementDares"] == 0
        assert body["lowSmilesCompletions"] == 0
        assert body["failures"] == 0
        assert dare_store.get(stale.id) is None

        again = client.post("/v1/dares/cleanup").json()
        assert again["expiredDares"] == 0

        last = client.get("/v1/dares/cleanup/last").json()["last_run"]
        assert last["expired_dares"] == 0

    def test_cleanup_ignores_client_clock(self, dare):
        resp = client.post("/v1/dares/cleanup", params={"now": "2100-01-01T00:00:00Z"})
        assert resp.status_code == 200
        assert resp.json()["expiredDares"] == 0
        assert client.get(f"/v1/dares/{dare['id']}").status_code == 200


class TestOps:
    def test_healthz_and_readyz(self):
        assert client.get("/healthz").json() == {"status": "ok"}
        assert client.get("/readyz").json() == {"status": "ok"}

    def test_health_db(self):
        body = client.get("/api/health/db", params={"now": "2025-01-15T12:00:00Z"}).json()
        assert body["ok"] is True
        assert body["db"]["latency_ms"] is None
        assert "dares" in body["db"]["tables_present"]
        assert body["computed_at"] == "2025-01-15T12:00:00Z"

    def test_metrics_exposition(self):
        client.get("/healthz")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "# TYPE http_requests_total counter" in resp.text
        assert 'path="/healthz"' in resp.text

    def test_request_id_propagates(self):
        resp = client.get("/healthz", headers={"x-request-id": "abc-123"})
        assert resp.headers["x-request-id"] == "abc-123"
