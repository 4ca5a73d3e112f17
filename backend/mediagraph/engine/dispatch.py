"""Single-node dispatch: node type -> executor."""
import logging

from ..nodes.registry import NodeRegistry
from .context import ExecuteOptions, ExecutionContext

logger = logging.getLogger(__name__)


async def execute_node(ctx: ExecutionContext, options: ExecuteOptions | None = None) -> None:
    """Run the executor registered for ctx.node.type.

    Unregistered types are ignored. Exceptions from the executor propagate
    after the node's error state has been recorded.
    """
    executor_cls = NodeRegistry.lookup(ctx.node.type)
    if executor_cls is None:
        logger.debug("No executor for node type %r (node %s), skipping", ctx.node.type, ctx.node_id)
        return
    await executor_cls().execute(ctx, options or ExecuteOptions())
