"""Workflow runner: dependency-ordered, batched execution of a whole graph."""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .cancellation import CancellationToken, CancelReason
from .context import ExecuteOptions, ExecutionContext, ExecutionServices
from .dispatch import execute_node
from .errors import ExecutionCancelled, WorkflowBusyError
from .executor import group_by_level
from .graph import GraphStore
from .history import CostLedger

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class RunStatus(str, Enum):
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class RunResult:
    status: RunStatus
    error: str | None = None
    failed_node: str | None = None
    incurred_cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "error": self.error,
            "failedNode": self.failed_node,
            "incurredCost": self.incurred_cost,
        }


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


def _chunk(items: list[str], size: int) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class WorkflowRunner:
    """Runs a GraphStore level by level, sharing one cancellation token.

    Nodes of one level run in batches of `max_concurrent_calls`. The first
    real failure in a batch stops the run; cancellation stops it quietly.
    """

    def __init__(
        self,
        store: GraphStore,
        services: ExecutionServices,
        max_concurrent_calls: int = 3,
        save_sync_timeout_s: float = 60.0,
    ):
        self.store = store
        self.services = services
        self.max_concurrent_calls = clamp_concurrency(max_concurrent_calls)
        self.save_sync_timeout_s = save_sync_timeout_s
        self._token: CancellationToken | None = None
        self._running = False
        self.current_node_ids: list[str] = []

    @classmethod
    def from_settings(cls, store: GraphStore, services: ExecutionServices, settings) -> "WorkflowRunner":
        return cls(
            store,
            services,
            max_concurrent_calls=settings.max_concurrent_calls,
            save_sync_timeout_s=settings.save_sync_timeout_s,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def ledger(self) -> CostLedger:
        return self.services.ledger

    def ensure_idle(self) -> None:
        if self._running:
            raise WorkflowBusyError("A workflow is already running")

    def set_max_concurrent_calls(self, value: int) -> None:
        self.max_concurrent_calls = clamp_concurrency(value)

    def _context(self, node_id: str, token: CancellationToken | None) -> ExecutionContext | None:
        node = self.store.get_node(node_id)
        if node is None:
            return None
        return ExecutionContext.from_store(self.store, node, self.services, token)

    async def _dispatch(self, node_id: str, token: CancellationToken, options: ExecuteOptions) -> None:
        token.raise_if_cancelled()
        ctx = self._context(node_id, token)
        if ctx is None:
            return
        await execute_node(ctx, options)

    async def run(self, start_from: str | None = None, timeout: float | None = None) -> RunResult:
        self.ensure_idle()

        levels = group_by_level(self.store.graph)
        start_level = 0
        if start_from is not None:
            found = next((i for i, level in enumerate(levels) if start_from in level), None)
            if found is None:
                logger.warning("Start node %s not in graph, running from the top", start_from)
            else:
                start_level = found

        token = CancellationToken()
        self._token = token
        self._running = True
        if timeout:
            token.cancel_after(timeout)
        options = ExecuteOptions()
        logger.info(
            "Running workflow: %d levels from level %d, concurrency %d",
            len(levels), start_level, self.max_concurrent_calls,
        )

        try:
            for level_idx in range(start_level, len(levels)):
                for batch in _chunk(levels[level_idx], self.max_concurrent_calls):
                    if token.cancelled:
                        return self._cancelled(token)
                    self.current_node_ids = batch
                    logger.debug("Executing level %d batch %s", level_idx, batch)

                    outcomes = await asyncio.gather(
                        *(self._dispatch(nid, token, options) for nid in batch),
                        return_exceptions=True,
                    )
                    for node_id, outcome in zip(batch, outcomes):
                        if isinstance(outcome, ExecutionCancelled):
                            continue
                        if isinstance(outcome, BaseException):
                            token.cancel(CancelReason.SIBLING_FAILED)
                            logger.error("Node %s failed, stopping workflow: %s", node_id, outcome)
                            return RunResult(
                                status=RunStatus.ERROR,
                                error=str(outcome) or type(outcome).__name__,
                                failed_node=node_id,
                                incurred_cost=self.ledger.incurred,
                            )
            if token.cancelled:
                return self._cancelled(token)
            logger.info("Workflow completed")
            return RunResult(status=RunStatus.COMPLETE, incurred_cost=self.ledger.incurred)
        finally:
            token.cancel_timer()
            self._running = False
            self._token = None
            self.current_node_ids = []

    def _cancelled(self, token: CancellationToken) -> RunResult:
        logger.info("Workflow cancelled (%s)", token.reason.value)
        message = None if token.reason == CancelReason.USER_CANCELLED else "Workflow timed out"
        return RunResult(
            status=RunStatus.CANCELLED, error=message, incurred_cost=self.ledger.incurred,
        )

    def stop(self) -> bool:
        """Cancel the current run. False when nothing is running."""
        if self._token is None:
            return False
        return self._token.cancel(CancelReason.USER_CANCELLED)

    async def regenerate(self, node_id: str) -> RunResult:
        """Re-run one node from its stored inputs, under its own token."""
        self.ensure_idle()
        ctx = self._context(node_id, CancellationToken())
        if ctx is None:
            raise KeyError(f"Unknown node: {node_id}")

        self._token = ctx.token
        self._running = True
        self.current_node_ids = [node_id]
        try:
            await execute_node(ctx, ExecuteOptions(use_stored_fallback=True))
        except ExecutionCancelled:
            return self._cancelled(ctx.token)
        except Exception as exc:
            logger.error("Regenerating node %s failed: %s", node_id, exc)
            return RunResult(
                status=RunStatus.ERROR,
                error=str(exc) or type(exc).__name__,
                failed_node=node_id,
                incurred_cost=self.ledger.incurred,
            )
        finally:
            self._running = False
            self._token = None
            self.current_node_ids = []
        return RunResult(status=RunStatus.COMPLETE, incurred_cost=self.ledger.incurred)

    async def settle(self, timeout: float | None = None) -> bool:
        """Wait for outstanding saves. False when some are still pending."""
        return await self.services.saves.wait_for_pending(
            self.save_sync_timeout_s if timeout is None else timeout,
        )
