"""Per-dispatch execution context handed to every node executor."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .history import HISTORY_LIMIT, CostLedger
from .saves import SaveTracker

if TYPE_CHECKING:
    from ..media.buffers import TransientStore
    from ..media.compose import MediaEngine
    from ..services.generation_client import GenerationClient
    from .cancellation import CancellationToken
    from .graph import Edge, GraphStore, Node
    from .inputs import ConnectedInputs


@dataclass
class ExecuteOptions:
    # Fall back to stored inputImages/inputPrompt when nothing live is connected
    use_stored_fallback: bool = False


@dataclass
class ExecutionServices:
    """Collaborators shared by every dispatch of one workflow."""

    client: GenerationClient
    media: MediaEngine
    buffers: TransientStore
    ledger: CostLedger = field(default_factory=CostLedger)
    saves: SaveTracker = field(default_factory=SaveTracker)
    provider_settings: dict[str, Any] = field(default_factory=dict)
    generations_path: str | None = None
    save_directory_path: str | None = None
    history_limit: int = HISTORY_LIMIT
    inline_output_limit_bytes: int = 20 * 1024 * 1024
    frame_grab_timeout_s: float = 30.0


@dataclass
class ExecutionContext:
    """Accessors, mutator and services for dispatching one node.

    `node` may be stale; executors read current values via get_fresh_node.
    """

    node: Node
    get_connected_inputs: Callable[[str], ConnectedInputs]
    update_node_data: Callable[[str, dict[str, Any]], None]
    get_fresh_node: Callable[[str], Node | None]
    get_edges: Callable[[], list[Edge]]
    get_nodes: Callable[[], list[Node]]
    services: ExecutionServices
    token: CancellationToken | None = None

    @classmethod
    def from_store(
        cls,
        store: GraphStore,
        node: Node,
        services: ExecutionServices,
        token: CancellationToken | None = None,
    ) -> ExecutionContext:
        from .inputs import resolve_connected_inputs

        return cls(
            node=node,
            get_connected_inputs=lambda node_id: resolve_connected_inputs(
                node_id, store.graph.nodes.values(), store.graph.edges,
            ),
            update_node_data=store.update_node_data,
            get_fresh_node=store.get_node,
            get_edges=store.get_edges,
            get_nodes=store.get_nodes,
            services=services,
            token=token,
        )

    @property
    def node_id(self) -> str:
        return self.node.id

    @property
    def client(self) -> GenerationClient:
        return self.services.client

    @property
    def media(self) -> MediaEngine:
        return self.services.media

    @property
    def buffers(self) -> TransientStore:
        return self.services.buffers

    @property
    def provider_settings(self) -> dict[str, Any]:
        return self.services.provider_settings

    @property
    def generations_path(self) -> str | None:
        return self.services.generations_path

    @property
    def save_directory_path(self) -> str | None:
        return self.services.save_directory_path

    def fresh_data(self) -> dict[str, Any]:
        fresh = self.get_fresh_node(self.node.id)
        return dict((fresh or self.node).data)

    def update(self, patch: dict[str, Any]) -> None:
        self.update_node_data(self.node.id, patch)

    def add_incurred_cost(self, amount: float) -> None:
        self.services.ledger.add_cost(amount)

    def add_to_global_history(self, entry: dict[str, Any]) -> None:
        self.services.ledger.add_to_history(entry)

    def track_save(self, key: str, task: asyncio.Task) -> None:
        self.services.saves.track(key, task)

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        if self.token is None:
            return await awaitable
        return await self.token.guard(awaitable)
