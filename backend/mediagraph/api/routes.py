"""REST API routes."""
import asyncio
import logging
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException

from ..config import settings
from ..engine.context import ExecutionServices
from ..engine.errors import WorkflowBusyError
from ..engine.executor import group_by_level
from ..engine.graph import Edge, Graph, GraphStore
from ..engine.history import CostLedger
from ..engine.runner import RunResult, RunStatus, WorkflowRunner
from ..engine.session import ExecutionSession, create_session, get_session
from ..media.buffers import TransientStore
from ..media.compose import MediaEngine
from ..models.schemas import (
    ExecuteRequest, ExecuteResponse, GraphSchema,
    NodeDefinitionResponse, WorkflowStatusResponse,
)
from ..nodes.registry import NodeRegistry
from ..services.generation_client import GenerationClient
from .websocket import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Collaborators shared by every run; filled in at startup
_shared: dict[str, Any] = {}


def configure(
    client: GenerationClient | None = None,
    media: MediaEngine | None = None,
    buffers: TransientStore | None = None,
) -> None:
    """Install shared collaborators. Missing ones are built from settings."""
    if client is not None:
        _shared["client"] = client
    if media is not None:
        _shared["media"] = media
    if buffers is not None:
        _shared["buffers"] = buffers
    if "client" not in _shared:
        _shared["client"] = GenerationClient.from_settings(settings)
    if "media" not in _shared:
        _shared["media"] = MediaEngine.from_settings(settings)
    if "buffers" not in _shared:
        _shared["buffers"] = TransientStore(settings.work_dir)


async def shutdown() -> None:
    client = _shared.pop("client", None)
    if client is not None:
        await client.aclose()
    _shared.clear()


def _schema_to_store(schema: GraphSchema) -> GraphStore:
    store = GraphStore(Graph())
    for n in schema.nodes:
        node = store.add_node(n.id, n.type, n.data)
        node.position = n.position
    for e in schema.edges:
        store.add_edge(Edge(
            id=e.id, source=e.source, target=e.target,
            source_handle=e.source_handle, target_handle=e.target_handle,
            created_at=e.created_at, data=e.data,
        ))
    return store


def _services(request: ExecuteRequest) -> ExecutionServices:
    if not _shared:
        configure()
    return ExecutionServices(
        client=_shared["client"],
        media=_shared["media"],
        buffers=_shared["buffers"],
        ledger=CostLedger(history_limit=settings.history_limit),
        provider_settings=request.provider_settings,
        generations_path=request.generations_path,
        save_directory_path=request.save_directory_path,
        history_limit=settings.history_limit,
        inline_output_limit_bytes=settings.inline_output_limit_bytes,
        frame_grab_timeout_s=settings.frame_grab_timeout_s,
    )


def _require_session(execution_id: str) -> ExecutionSession:
    session = get_session(execution_id)
    if not session:
        raise HTTPException(status_code=404, detail="Execution not found")
    return session


async def _report(session: ExecutionSession, result: RunResult) -> None:
    session.result = result
    event = {
        RunStatus.COMPLETE: "execution_complete",
        RunStatus.CANCELLED: "execution_cancelled",
        RunStatus.ERROR: "execution_error",
    }[result.status]
    await manager.send_to_session(session.session_id, {
        "type": event,
        "execution_id": session.execution_id,
        **result.to_dict(),
    })


def _spawn(session: ExecutionSession, work) -> None:
    session.result = None

    async def _run():
        await manager.send_to_session(session.session_id, {
            "type": "execution_start", "execution_id": session.execution_id,
        })
        try:
            result = await work()
            await session.runner.settle()
        except Exception as e:
            logger.exception("Execution %s failed", session.execution_id)
            result = RunResult(
                status=RunStatus.ERROR,
                error=str(e),
                incurred_cost=session.runner.ledger.incurred,
            )
        await _report(session, result)

    session.task = asyncio.create_task(_run())


@router.get("/nodes")
async def list_nodes():
    """Return all registered node definitions."""
    result = {}
    for name, defn in NodeRegistry.all_definitions().items():
        result[name] = NodeDefinitionResponse(
            node_type=defn.node_type,
            display_name=defn.display_name,
            category=defn.category,
            description=defn.description,
            output_kind=defn.output_kind.value if defn.output_kind else None,
            default_data=defn.default_data,
        ).model_dump(by_alias=True)
    return result


@router.post("/workflows/execute", response_model=ExecuteResponse)
async def execute(request: ExecuteRequest):
    """Start a workflow run in the background.

    Returns immediately with the execution id. Node updates and the final
    outcome are delivered via WebSocket.
    """
    store = _schema_to_store(request.graph)
    try:
        group_by_level(store.graph)
    except RuntimeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    runner = WorkflowRunner.from_settings(store, _services(request), settings)
    if request.max_concurrent_calls is not None:
        runner.set_max_concurrent_calls(request.max_concurrent_calls)

    session_id = request.session_id or str(uuid.uuid4())
    execution_id = str(uuid.uuid4())
    session = create_session(execution_id, session_id, store, runner)
    session.watch(manager.make_node_listener(session_id, execution_id, asyncio.get_running_loop()))

    _spawn(session, lambda: runner.run(start_from=request.start_from_node_id))
    return ExecuteResponse(execution_id=execution_id, status="started")


@router.post("/workflows/{execution_id}/stop")
async def stop_workflow(execution_id: str):
    session = _require_session(execution_id)
    if not session.runner.stop():
        return {"status": session.status}
    return {"status": "stopping"}


@router.post("/workflows/{execution_id}/nodes/{node_id}/regenerate", response_model=ExecuteResponse)
async def regenerate_node(execution_id: str, node_id: str):
    """Re-run one node from its stored inputs."""
    session = _require_session(execution_id)
    try:
        session.runner.ensure_idle()
    except WorkflowBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if session.store.get_node(node_id) is None:
        raise HTTPException(status_code=404, detail="Node not found")

    _spawn(session, lambda: session.runner.regenerate(node_id))
    return ExecuteResponse(execution_id=execution_id, status="started")


@router.get("/workflows/{execution_id}", response_model=WorkflowStatusResponse)
async def get_workflow(execution_id: str):
    session = _require_session(execution_id)
    result = session.result
    return WorkflowStatusResponse(
        execution_id=execution_id,
        status=session.status,
        current_node_ids=list(session.runner.current_node_ids),
        nodes={n.id: n.data for n in session.store.get_nodes()},
        incurred_cost=session.runner.ledger.incurred,
        error=result.error if result else None,
        failed_node=result.failed_node if result else None,
        pending_saves=session.runner.services.saves.pending,
    )
