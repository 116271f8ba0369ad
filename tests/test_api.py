from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from hairstyle_lab.api.app import create_app
from hairstyle_lab.config import EngineConfig
from hairstyle_lab.engine_factory import create_engine_container
from hairstyle_lab.image.gemini.interfaces import GenerationOutcome
from hairstyle_lab.image.payload import encode_data_url

from fakes import FakeImageEngine, FakeJudge, make_png


@pytest.fixture()
def engine_fake() -> FakeImageEngine:
    return FakeImageEngine()


@pytest.fixture()
def client(store, tmp_path: Path, engine_fake: FakeImageEngine):
    config = EngineConfig()
    container = create_engine_container(
        config,
        image_engine=engine_fake,
        judge=FakeJudge(),
        store=store,
        output_dir=tmp_path / "variations",
    )
    with TestClient(create_app(container, config=config)) as test_client:
        yield test_client


def _body(**extra):
    body = {
        "userImage": encode_data_url(make_png((210, 190, 170)), "image/png"),
        "referenceImage": encode_data_url(make_png((10, 10, 10)), "image/png"),
    }
    body.update(extra)
    return body


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["persistence"] is True


def test_generate_then_select(client: TestClient) -> None:
    response = client.post("/api/generate-variations", json=_body(sessionId="api-1"))
    payload = response.json()

    assert response.status_code == 200
    assert payload["success"] is True
    assert payload["totalGenerated"] == 4
    winner = payload["variations"][0]
    assert winner["attemptId"] == winner["id"]

    selection = client.post("/api/record-selection", json={"attemptId": winner["attemptId"], "sessionId": "api-1"})
    assert selection.status_code == 200
    assert selection.json()["success"] is True

    stats = client.get("/api/record-selection/stats").json()
    rows = {row["id"]: row for row in stats["strategies"]}
    assert rows[winner["strategyId"]]["winCount"] == 1
    assert stats["totalAttempts"] == 4


def test_saved_variation_is_served_by_reference(client: TestClient) -> None:
    payload = client.post("/api/generate-variations", json=_body(maxVariations=1)).json()
    ref = payload["variations"][0]["imageRef"]

    response = client.get(f"/api/artifacts/{ref}")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("image/png")
    assert response.content.startswith(b"\x89PNG")
    assert client.get("/api/artifacts/missing.png").status_code == 404


def test_generate_requires_both_images(client: TestClient) -> None:
    response = client.post("/api/generate-variations", json={"userImage": _body()["userImage"]})

    assert response.status_code == 400
    assert "referenceImage" in response.json()["error"]


def test_all_failed_is_a_gateway_error(client: TestClient, engine_fake: FakeImageEngine) -> None:
    engine_fake.respond = lambda _: GenerationOutcome(status="no_image", text="I can't help with that.")

    response = client.post("/api/generate-variations", json=_body())

    assert response.status_code == 502
    payload = response.json()
    assert payload["error"] == "All generations failed"
    assert payload["details"][0]["error"].startswith("No image returned")


def test_record_selection_validation(client: TestClient) -> None:
    assert client.post("/api/record-selection", json={"sessionId": "x"}).status_code == 400
    missing = client.post("/api/record-selection", json={"attemptId": "nope", "sessionId": "x"})
    assert missing.status_code == 500
    assert missing.json()["error"] == "Failed to record selection"


def test_stream_endpoint_emits_sse(client: TestClient) -> None:
    response = client.post("/api/generate-variations-stream", json=_body(maxVariations=2))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(chunk[len("data: "):])
        for chunk in response.text.split("\n\n")
        if chunk.startswith("data: ")
    ]
    assert events[0]["type"] == "start"
    assert events[-1]["type"] == "done"
    assert sum(1 for event in events if event["type"] == "complete") == 2


def test_evolution_endpoints(client: TestClient) -> None:
    status = client.get("/api/evolve-strategies").json()
    assert status["configured"] is True
    assert status["nextEvolution"] == 5

    result = client.post("/api/evolve-strategies").json()
    assert result["success"] is True
    assert result["evolved"] is False
    assert result["reason"].startswith("Not time yet")


def test_generate_from_reference_returns_one_variation(client: TestClient, engine_fake: FakeImageEngine) -> None:
    response = client.post("/api/generate-from-reference", json=_body(sessionId="single"))

    assert response.status_code == 200
    payload = response.json()
    assert payload["sessionId"] == "single"
    assert payload["variation"]["strategyId"] == "default-1"
    assert len(engine_fake.calls) == 1
