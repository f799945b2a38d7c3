"""Tests for the HTTP admin surface."""

import pytest
from fastapi.testclient import TestClient

from abtesting.core.db import get_db
from abtesting.core.flags import AB_TESTING_FLAG, StaticFeatureFlags, get_feature_flags
from abtesting.core.settings import Settings, get_settings
from abtesting.main import app

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def enabled_flags() -> StaticFeatureFlags:
    return StaticFeatureFlags({AB_TESTING_FLAG})


@pytest.fixture
def client(db, enabled_flags) -> TestClient:
    """Create test client wired to the in-memory database."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_feature_flags] = lambda: enabled_flags
    app.dependency_overrides[get_settings] = lambda: Settings(TOKENS=[TOKEN])

    yield TestClient(app)

    app.dependency_overrides.clear()


def create_payload(**overrides) -> dict:
    payload = {
        "name": "Narrative prompt v2",
        "operation": "narrativeGeneration",
        "variants": [{"name": "v1", "weight": 50}, {"name": "v2", "weight": 50}],
    }
    payload.update(overrides)
    return payload


def create_and_start(client: TestClient) -> str:
    test_id = client.post("/ab-tests", json=create_payload(), headers=AUTH).json()["test_id"]
    client.post(f"/ab-tests/{test_id}/start", headers=AUTH)
    return test_id


def test_requires_token(client: TestClient) -> None:
    assert client.get("/ab-tests").status_code == 401
    assert client.get("/ab-tests", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_create_and_get(client: TestClient) -> None:
    response = client.post("/ab-tests", json=create_payload(), headers=AUTH)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "draft"
    assert [v["variant_id"] for v in data["variants"]] == ["control", "variant_1"]

    fetched = client.get(f"/ab-tests/{data['test_id']}", headers=AUTH)
    assert fetched.status_code == 200
    assert fetched.json()["test_id"] == data["test_id"]


def test_create_with_one_variant_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/ab-tests", json=create_payload(variants=[{"weight": 100}]), headers=AUTH
    )

    assert response.status_code == 400
    assert "at least 2 variants" in response.json()["detail"]


def test_create_when_disabled(client: TestClient, enabled_flags) -> None:
    enabled_flags.enabled.clear()

    response = client.post("/ab-tests", json=create_payload(), headers=AUTH)
    assert response.status_code == 503


def test_unknown_test_is_404(client: TestClient) -> None:
    assert client.get("/ab-tests/test_missing", headers=AUTH).status_code == 404
    assert client.post("/ab-tests/test_missing/start", headers=AUTH).status_code == 404
    assert client.get("/ab-tests/test_missing/results", headers=AUTH).status_code == 404


def test_illegal_transition_is_409(client: TestClient) -> None:
    test_id = client.post("/ab-tests", json=create_payload(), headers=AUTH).json()["test_id"]

    response = client.post(f"/ab-tests/{test_id}/pause", headers=AUTH)
    assert response.status_code == 409


def test_lifecycle_and_listing(client: TestClient) -> None:
    test_id = create_and_start(client)

    listed = client.get("/ab-tests", params={"status": "running"}, headers=AUTH).json()
    assert [t["test_id"] for t in listed] == [test_id]

    active = client.get("/operations/narrativeGeneration/active-test", headers=AUTH)
    assert active.json()["test_id"] == test_id

    assert client.post(f"/ab-tests/{test_id}/pause", headers=AUTH).json()["status"] == "paused"
    stopped = client.post(f"/ab-tests/{test_id}/stop", headers=AUTH).json()
    assert stopped["status"] == "completed"
    assert stopped["results"]["analysis"]["is_significant"] is False

    archived = client.post(f"/ab-tests/{test_id}/archive", headers=AUTH).json()
    assert archived["status"] == "archived"

    none_active = client.get("/operations/narrativeGeneration/active-test", headers=AUTH)
    assert none_active.status_code == 200
    assert none_active.json() is None


def test_assignment_events_and_results(client: TestClient) -> None:
    test_id = create_and_start(client)

    assignment = client.get(f"/ab-tests/{test_id}/assignment/user-1", headers=AUTH).json()
    variant_id = assignment["variant"]["variant_id"]

    recorded = client.post(
        "/events",
        json={
            "test_id": test_id,
            "variant_id": variant_id,
            "user_id": "user-1",
            "event_type": "generation",
            "metrics": {"qualityScore": 88, "latencyMs": 950},
        },
        headers=AUTH,
    )
    assert recorded.status_code == 201
    assert recorded.json()["recorded"] is True

    results = client.get(f"/ab-tests/{test_id}/results", headers=AUTH).json()
    assert results["total_assignments"] == 1
    assert results["analysis"]["variants"][variant_id]["sample_size"] == 1
    assert results["analysis"]["variants"][variant_id]["avg_quality_score"] == 88

    events = client.get(f"/ab-tests/{test_id}/events", headers=AUTH).json()
    assert [e["variant_id"] for e in events] == [variant_id]


def test_bad_event_is_400(client: TestClient) -> None:
    test_id = create_and_start(client)

    response = client.post(
        "/events",
        json={
            "test_id": test_id,
            "variant_id": "variant_7",
            "user_id": "user-1",
            "event_type": "generation",
        },
        headers=AUTH,
    )
    assert response.status_code == 400


def test_assignment_outside_audience_is_null(client: TestClient) -> None:
    test_id = client.post(
        "/ab-tests",
        json=create_payload(target_audience={"user_ids": ["alice"]}),
        headers=AUTH,
    ).json()["test_id"]
    client.post(f"/ab-tests/{test_id}/start", headers=AUTH)

    response = client.get(f"/ab-tests/{test_id}/assignment/bob", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["variant"] is None
