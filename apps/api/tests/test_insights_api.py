"""
API tests for /v1/insights.

The generator dependency is overridden with a fallback-only generator so
no test reaches Gemini.
"""
import json
from datetime import timedelta
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from core.exceptions import SourceUnavailable
from main import app
from models import InsightCacheRecord, utcnow
from routers.insights import get_insight_generator
from services.insight_generator import InsightGenerator
from services.insight_kinds import KINDS, WELCOME_MESSAGE


def _gemini_client(payload):
    part = MagicMock()
    part.text = json.dumps(payload)
    candidate = MagicMock()
    candidate.content.parts = [part]
    client = MagicMock()
    client.models.generate_content.return_value = MagicMock(candidates=[candidate])
    return client


@pytest.fixture
def generator():
    return MagicMock(wraps=InsightGenerator(client=None, enabled=False))


@pytest.fixture
def client(db_session, generator):
    app.dependency_overrides[get_insight_generator] = lambda: generator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class TestGetOrGenerate:
    def test_first_call_generates_second_is_cached(self, client, generator, owner_id, make_attempt):
        make_attempt(owner_id, "love-language-giving", "quality_time", completed_at=utcnow() - timedelta(days=2))

        first = client.post("/v1/insights", json={"owner_id": str(owner_id)})
        second = client.post("/v1/insights", json={"owner_id": str(owner_id)})

        assert first.status_code == 200
        body = first.json()
        assert body["kind"] == "relationship_insights"
        assert body["cached"] is False
        assert body["source"] == "fallback"
        assert "Quality Time" in body["payload"]["domains"]["giving"]["strength"]

        assert second.status_code == 200
        assert second.json()["cached"] is True
        assert second.json()["fingerprint"] == body["fingerprint"]
        assert generator.generate.call_count == 1

    def test_new_attempt_invalidates(self, client, generator, owner_id, make_attempt):
        make_attempt(owner_id, "apology-style", "words", completed_at=utcnow() - timedelta(days=5))
        client.post("/v1/insights", json={"owner_id": str(owner_id)})

        make_attempt(owner_id, "apology-style", "accountability", completed_at=utcnow())
        response = client.post("/v1/insights", json={"owner_id": str(owner_id)})

        assert response.json()["cached"] is False
        assert generator.generate.call_count == 2

    def test_checkin_does_not_regenerate_relationship_insights(self, client, generator, owner_id, make_attempt, make_checkin):
        make_attempt(owner_id, "love-language-giving", "quality_time", completed_at=utcnow() - timedelta(days=2))
        first = client.post("/v1/insights", json={"owner_id": str(owner_id)})
        second = client.post("/v1/insights", json={"owner_id": str(owner_id)})

        make_checkin(owner_id, created_at=utcnow(), mood=2, need="rest")
        third = client.post("/v1/insights", json={"owner_id": str(owner_id)})

        assert [r.json()["cached"] for r in (first, second, third)] == [False, True, True]
        assert third.json()["fingerprint"] == first.json()["fingerprint"]
        assert generator.generate.call_count == 1

    def test_checkin_regenerates_welcome_message(self, client, generator, owner_id, make_checkin):
        body = {"owner_id": str(owner_id), "kind": WELCOME_MESSAGE}
        make_checkin(owner_id, created_at=utcnow() - timedelta(hours=2), mood=4)
        client.post("/v1/insights", json=body)

        make_checkin(owner_id, created_at=utcnow(), mood=1, need="rest")
        response = client.post("/v1/insights", json=body)

        assert response.json()["cached"] is False
        assert generator.generate.call_count == 2

    def test_force(self, client, generator, owner_id):
        client.post("/v1/insights", json={"owner_id": str(owner_id)})
        response = client.post("/v1/insights", json={"owner_id": str(owner_id), "force": True})
        assert response.json()["cached"] is False
        assert generator.generate.call_count == 2

    def test_domain_subset(self, client, owner_id):
        response = client.post(
            "/v1/insights",
            json={"owner_id": str(owner_id), "domains": ["giving", "attachment"]},
        )
        assert response.status_code == 200
        assert sorted(response.json()["payload"]["domains"]) == ["attachment", "giving"]
        assert "weaving" not in response.json()["payload"]

    def test_welcome_message(self, client, owner_id, make_checkin):
        make_checkin(owner_id, created_at=utcnow() - timedelta(hours=1), mood=2, need="rest")
        response = client.post("/v1/insights", json={"owner_id": str(owner_id), "kind": WELCOME_MESSAGE})
        assert response.status_code == 200
        welcome = response.json()["payload"]["welcome"]
        assert welcome["nudge"]["variant"] == "box"
        assert "rest" in welcome["lines"][1]

    def test_model_output_is_served(self, client, owner_id):
        payload = {
            "welcome": {"greeting": "Good morning.", "lines": ["One small step."]},
            "affirmation": {"text": "I am enough.", "tone": "bright"},
        }
        generator = InsightGenerator(client=_gemini_client(payload), model="gemini-test", enabled=True)
        app.dependency_overrides[get_insight_generator] = lambda: generator

        response = client.post("/v1/insights", json={"owner_id": str(owner_id), "kind": WELCOME_MESSAGE})

        assert response.json()["source"] == "gemini-test"
        assert response.json()["payload"]["welcome"]["greeting"] == "Good morning."

    def test_record_is_persisted(self, client, db_session, owner_id):
        client.post("/v1/insights", json={"owner_id": str(owner_id)})
        row = db_session.query(InsightCacheRecord).filter_by(owner_id=owner_id).one()
        assert row.kind == "relationship_insights"
        assert row.source_model == "fallback"


class TestValidation:
    def test_unknown_kind(self, client, owner_id):
        response = client.post("/v1/insights", json={"owner_id": str(owner_id), "kind": "horoscope"})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_KIND"

    def test_unknown_domain(self, client, owner_id):
        response = client.post("/v1/insights", json={"owner_id": str(owner_id), "domains": ["astrology"]})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR_DOMAINS"

    def test_subset_not_supported_for_welcome(self, client, owner_id):
        response = client.post(
            "/v1/insights",
            json={"owner_id": str(owner_id), "kind": WELCOME_MESSAGE, "domains": ["giving"]},
        )
        assert response.status_code == 422

    def test_bad_owner_id(self, client):
        assert client.post("/v1/insights", json={"owner_id": "nope"}).status_code == 422


class TestFailures:
    def test_source_unavailable_is_503(self, client, owner_id):
        with patch(
            "routers.insights.SignalAggregator.collect",
            side_effect=SourceUnavailable("Could not read quiz attempts"),
        ):
            response = client.post("/v1/insights", json={"owner_id": str(owner_id)})
        assert response.status_code == 503
        assert response.json()["error_code"] == "SOURCE_UNAVAILABLE"

    def test_generation_unavailable_is_503(self, client, generator, owner_id):
        generator.generate.side_effect = RuntimeError("fallback broken")
        response = client.post("/v1/insights", json={"owner_id": str(owner_id)})
        assert response.status_code == 503
        assert response.json()["error_code"] == "GENERATION_UNAVAILABLE"


class TestStatus:
    def test_status_without_record(self, client, owner_id):
        response = client.get(f"/v1/insights/{owner_id}/status")
        assert response.status_code == 200
        assert response.json()["has_record"] is False

    def test_status_after_generation(self, client, generator, owner_id):
        client.post("/v1/insights", json={"owner_id": str(owner_id), "kind": WELCOME_MESSAGE})
        response = client.get(f"/v1/insights/{owner_id}/status", params={"kind": WELCOME_MESSAGE})
        body = response.json()
        assert body["has_record"] is True
        assert body["valid"] is True
        assert body["kind"] == WELCOME_MESSAGE
        assert generator.generate.call_count == 1

    def test_status_unknown_kind(self, client):
        assert client.get(f"/v1/insights/{uuid4()}/status", params={"kind": "x"}).status_code == 422


class TestHealth:
    def test_ping(self, client):
        assert client.get("/ping").json() == {"pong": True}

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_reports_database_down(self, client):
        with patch("main.check_db_connection", return_value=False):
            response = client.get("/health")
        assert response.status_code == 503


def test_kinds_registry_matches_router():
    assert set(KINDS) == {"relationship_insights", "welcome_message"}
