"""Shared test fixtures for MediaGraph backend tests."""
import json
import sys
from pathlib import Path

import httpx
import pytest

# Ensure mediagraph package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from mediagraph.engine.context import ExecutionContext, ExecutionServices
from mediagraph.engine.graph import Edge, Graph, GraphStore
from mediagraph.media.buffers import TransientStore, encode_data_url
from mediagraph.services.generation_client import GenerationClient

GENERATION_BASE_URL = "http://generation.test"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-frame"


@pytest.fixture(scope="session", autouse=True)
def register_nodes():
    """Discover and register all executors once per test session."""
    from mediagraph.nodes.registry import NodeRegistry
    NodeRegistry.discover("mediagraph.nodes")


def fake_clip(duration: float) -> str:
    """Data URL for a placeholder clip whose payload records its duration."""
    return encode_data_url(f"dur={duration}".encode(), "video/mp4")


def clip_duration(path: Path) -> float:
    text = path.read_bytes().decode(errors="replace")
    if text.startswith("dur="):
        return float(text[4:])
    return 5.0


class FakeMediaEngine:
    """Stands in for MediaEngine: records calls and writes placeholder files.

    Placeholder clips carry `dur=<seconds>` as their payload, so stitched
    output durations can be checked without a real encoder.
    """

    def __init__(self, encoder_ok: bool = True):
        self.encoder_ok = encoder_ok
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None
        self.block = None  # optional asyncio.Event awaited inside stitch

    def called(self, name: str) -> list[dict]:
        return [kwargs for method, kwargs in self.calls if method == name]

    async def encoder_supported(self) -> bool:
        self.calls.append(("encoder_supported", {}))
        return self.encoder_ok

    async def probe_duration(self, path: Path, fallback: float = 5.0) -> float:
        self.calls.append(("probe_duration", {"path": path}))
        return clip_duration(path)

    async def stitch(self, clips, output, audio=None, on_progress=None):
        self.calls.append((
            "stitch",
            {"clips": [c.name for c in clips], "durations": [clip_duration(c) for c in clips], "audio": audio},
        ))
        if self.block is not None:
            await self.block.wait()
        if self.fail_with is not None:
            raise self.fail_with
        if on_progress:
            on_progress(50.0)
        total = sum(clip_duration(c) for c in clips)
        output.write_bytes(f"dur={total}".encode())
        return output

    async def trim(self, source, output, start, end, on_progress=None):
        self.calls.append(("trim", {"start": start, "end": end}))
        output.write_bytes(f"dur={end - start}".encode())
        return output

    async def apply_speed_curve(
        self, source, output, easing, output_duration, source_duration=None, on_progress=None,
    ):
        self.calls.append((
            "apply_speed_curve",
            {"easing": easing, "output_duration": output_duration, "source_duration": source_duration},
        ))
        if on_progress:
            on_progress(40.0)
        output.write_bytes(f"dur={output_duration}".encode())
        return output

    async def extract_frame(self, source, seek_s, timeout_s=30.0):
        self.calls.append(("extract_frame", {"seek_s": seek_s, "timeout_s": timeout_s}))
        if self.fail_with is not None:
            raise self.fail_with
        return PNG_BYTES


class ServiceRecorder:
    """httpx MockTransport handler recording every request to the service."""

    def __init__(self, routes: dict | None = None):
        self.routes = dict(routes or {})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": f"No route {request.url.path}"})
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]

    def headers(self, path: str) -> list[httpx.Headers]:
        return [r.headers for r in self.requests if r.url.path == path]


@pytest.fixture
def fake_media():
    return FakeMediaEngine()


@pytest.fixture
def make_services(tmp_path, fake_media):
    """Factory for ExecutionServices backed by a mocked generation service."""
    def factory(handler=None, **kwargs) -> ExecutionServices:
        transport = httpx.MockTransport(handler or ServiceRecorder())
        client = GenerationClient(GENERATION_BASE_URL, timeout=5.0, transport=transport)
        kwargs.setdefault("media", fake_media)
        return ExecutionServices(
            client=client,
            buffers=TransientStore(tmp_path / "work"),
            **kwargs,
        )
    return factory


@pytest.fixture
def make_store():
    """Factory building a GraphStore from (id, type, data) tuples and edges."""
    def factory(nodes, edges=()) -> GraphStore:
        store = GraphStore(Graph())
        for node_id, node_type, data in nodes:
            store.add_node(node_id, node_type, data)
        for edge in edges:
            store.add_edge(edge)
        return store
    return factory


@pytest.fixture
def make_context():
    def factory(store: GraphStore, node_id: str, services: ExecutionServices, token=None):
        return ExecutionContext.from_store(store, store.get_node(node_id), services, token)
    return factory


@pytest.fixture
def edge():
    """Edge builder with sequential ids and creation times."""
    counter = {"n": 0}

    def factory(source, target, target_handle=None, source_handle=None, created_at=None, **data):
        counter["n"] += 1
        n = counter["n"]
        return Edge(
            id=f"e{n}",
            source=source,
            target=target,
            source_handle=source_handle,
            target_handle=target_handle,
            created_at=created_at if created_at is not None else float(n),
            data=data,
        )
    return factory


@pytest.fixture
def recorded_updates():
    """Subscribe to a store and collect (node_id, patch) pairs."""
    def factory(store: GraphStore) -> list[tuple[str, dict]]:
        updates: list[tuple[str, dict]] = []
        store.subscribe(lambda node_id, patch: updates.append((node_id, dict(patch))))
        return updates
    return factory
