"""Tests for the REST and WebSocket API."""
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import GENERATION_BASE_URL, FakeMediaEngine, ServiceRecorder
from mediagraph.api import routes
from mediagraph.main import app
from mediagraph.media.buffers import TransientStore
from mediagraph.services.generation_client import GenerationClient

OUT_IMAGE = "data:image/png;base64,T1VU"
FINISHED = {"complete", "cancelled", "error"}


@pytest.fixture
def recorder():
    return ServiceRecorder({
        "/api/generate": {"success": True, "image": OUT_IMAGE},
        "/api/save-generation": {"success": True, "imageId": "stored-1"},
    })


@pytest.fixture
def client(recorder, tmp_path):
    routes.configure(
        client=GenerationClient(GENERATION_BASE_URL, transport=httpx.MockTransport(recorder)),
        media=FakeMediaEngine(),
        buffers=TransientStore(tmp_path / "work"),
    )
    with TestClient(app) as c:
        yield c


def graph_payload(prompt="a lighthouse at dusk"):
    return {
        "nodes": [
            {"id": "p", "type": "prompt", "data": {"prompt": prompt}},
            {"id": "gen", "type": "nanoBanana", "data": {}},
            {"id": "gal", "type": "outputGallery", "data": {}},
        ],
        "edges": [
            {"id": "e1", "source": "p", "target": "gen", "targetHandle": "text", "createdAt": 1},
            {"id": "e2", "source": "gen", "target": "gal", "targetHandle": "image", "createdAt": 2},
        ],
    }


def wait_for_finish(client, execution_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/workflows/{execution_id}").json()
        if body["status"] in FINISHED:
            return body
        time.sleep(0.02)
    raise AssertionError(f"execution {execution_id} did not finish")


class TestNodeDefinitions:
    def test_lists_every_node_type(self, client):
        resp = client.get("/api/nodes")
        assert resp.status_code == 200
        nodes = resp.json()
        assert "nanoBanana" in nodes
        assert "videoStitch" in nodes
        assert nodes["nanoBanana"]["outputKind"] == "image"
        assert nodes["videoStitch"]["defaultData"]["loopCount"] == 1
        assert nodes["outputGallery"]["category"] == "Output"


class TestExecute:
    def test_runs_workflow_to_completion(self, client, recorder):
        resp = client.post("/api/workflows/execute", json={"graph": graph_payload()})
        assert resp.status_code == 200
        started = resp.json()
        assert started["status"] == "started"

        body = wait_for_finish(client, started["executionId"])
        assert body["status"] == "complete"
        assert body["error"] is None
        assert body["incurredCost"] == pytest.approx(0.134)
        assert body["nodes"]["gen"]["outputImage"] == OUT_IMAGE
        assert body["nodes"]["gal"]["images"] == [OUT_IMAGE]
        assert recorder.bodies("/api/generate")[0]["prompt"] == "a lighthouse at dusk"

    def test_provider_settings_forwarded(self, client, recorder):
        resp = client.post("/api/workflows/execute", json={
            "graph": graph_payload(),
            "providerSettings": {"providers": {"gemini": {"apiKey": "secret"}}},
        })
        wait_for_finish(client, resp.json()["executionId"])
        assert recorder.headers("/api/generate")[0]["x-gemini-api-key"] == "secret"

    def test_generations_saved(self, client, recorder):
        resp = client.post("/api/workflows/execute", json={
            "graph": graph_payload(),
            "generationsPath": "/projects/demo/generations",
        })
        body = wait_for_finish(client, resp.json()["executionId"])
        assert body["pendingSaves"] == []
        assert body["nodes"]["gen"]["imageHistory"][0]["id"] == "stored-1"

    def test_failure_reported(self, client):
        graph = graph_payload()
        graph["nodes"][0]["data"]["prompt"] = ""
        resp = client.post("/api/workflows/execute", json={"graph": graph})
        body = wait_for_finish(client, resp.json()["executionId"])
        assert body["status"] == "error"
        assert body["failedNode"] == "gen"
        assert body["error"] == "Missing text input"

    def test_cycle_rejected(self, client):
        graph = {
            "nodes": [{"id": "a", "type": "prompt"}, {"id": "b", "type": "prompt"}],
            "edges": [
                {"id": "e1", "source": "a", "target": "b"},
                {"id": "e2", "source": "b", "target": "a"},
            ],
        }
        resp = client.post("/api/workflows/execute", json={"graph": graph})
        assert resp.status_code == 400
        assert "cycle" in resp.json()["detail"]

    def test_unknown_execution(self, client):
        assert client.get("/api/workflows/nope").status_code == 404
        assert client.post("/api/workflows/nope/stop").status_code == 404


class TestStopAndRegenerate:
    def test_stop_finished_run_reports_status(self, client):
        execution_id = client.post(
            "/api/workflows/execute", json={"graph": graph_payload()},
        ).json()["executionId"]
        wait_for_finish(client, execution_id)
        assert client.post(f"/api/workflows/{execution_id}/stop").json() == {"status": "complete"}

    def test_regenerate_node(self, client, recorder):
        execution_id = client.post(
            "/api/workflows/execute", json={"graph": graph_payload()},
        ).json()["executionId"]
        wait_for_finish(client, execution_id)

        resp = client.post(f"/api/workflows/{execution_id}/nodes/gen/regenerate")
        assert resp.status_code == 200
        body = wait_for_finish(client, execution_id)
        assert body["status"] == "complete"
        assert len(recorder.bodies("/api/generate")) == 2
        assert len(body["nodes"]["gen"]["imageHistory"]) == 2
        assert body["incurredCost"] == pytest.approx(0.268)

    def test_regenerate_unknown_node(self, client):
        execution_id = client.post(
            "/api/workflows/execute", json={"graph": graph_payload()},
        ).json()["executionId"]
        wait_for_finish(client, execution_id)
        resp = client.post(f"/api/workflows/{execution_id}/nodes/ghost/regenerate")
        assert resp.status_code == 404


class TestWebSocket:
    def test_streams_execution_events(self, client):
        with client.websocket_connect("/ws/workflow/session-1") as ws:
            resp = client.post("/api/workflows/execute", json={
                "graph": graph_payload(), "sessionId": "session-1",
            })
            execution_id = resp.json()["executionId"]

            events = []
            while True:
                message = ws.receive_json()
                events.append(message)
                if message["type"] in ("execution_complete", "execution_error", "execution_cancelled"):
                    break

        assert events[0] == {"type": "execution_start", "execution_id": execution_id}
        final = events[-1]
        assert final["type"] == "execution_complete"
        assert final["incurredCost"] == pytest.approx(0.134)
        updates = [e for e in events if e["type"] == "node_update"]
        assert any(e["node_id"] == "gen" and e["data"].get("status") == "loading" for e in updates)
        assert any(e["node_id"] == "gen" and e["data"].get("outputImage") == OUT_IMAGE for e in updates)
