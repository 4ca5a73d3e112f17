"""Split-grid node: cuts one image into a rows x cols grid of child inputs."""
import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import cv2
import numpy as np

from ..engine.errors import ExecutionCancelled, ExecutionError, MediaProcessingError, NodeValidationError
from ..media.buffers import encode_data_url
from .base import BaseExecutor, NodeKind, NodeStatus
from .registry import NodeRegistry

if TYPE_CHECKING:
    from ..engine.context import ExecuteOptions, ExecutionContext

logger = logging.getLogger(__name__)


def _bounds(size: int, parts: int) -> list[int]:
    # integer cut points covering every pixel
    return [int(round(i * size / parts)) for i in range(parts + 1)]


def split_image(image: np.ndarray, rows: int, cols: int) -> list[np.ndarray]:
    """Cells in row-major order."""
    if rows < 1 or cols < 1:
        raise ValueError("Grid needs at least one row and one column")
    height, width = image.shape[:2]
    ys = _bounds(height, rows)
    xs = _bounds(width, cols)
    return [
        image[ys[r]:ys[r + 1], xs[c]:xs[c + 1]]
        for r in range(rows)
        for c in range(cols)
    ]


def _split_file(path: Path, rows: int, cols: int) -> list[tuple[str, int, int]]:
    image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise MediaProcessingError("Failed to decode source image")
    cells = []
    for cell in split_image(image, rows, cols):
        ok, encoded = cv2.imencode(".png", cell)
        if not ok:
            raise MediaProcessingError("Failed to encode grid cell")
        height, width = cell.shape[:2]
        cells.append((encode_data_url(encoded.tobytes(), "image/png"), width, height))
    return cells


@NodeRegistry.register(NodeKind.SPLIT_GRID)
class SplitGridExecutor(BaseExecutor):
    """Fills the configured child image inputs with grid cells."""

    CATEGORY = "Image"
    DISPLAY_NAME = "Split Grid"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {
            "sourceImage": None,
            "targetCount": 6,
            "defaultPrompt": "",
            "generateSettings": {
                "aspectRatio": "1:1",
                "resolution": "1K",
                "model": "nano-banana-pro",
                "useGoogleSearch": False,
            },
            "childNodeIds": [],
            "gridRows": 2,
            "gridCols": 3,
            "isConfigured": False,
            "status": NodeStatus.IDLE.value,
            "error": None,
        }

    def _fail(self, ctx: "ExecutionContext", message: str) -> None:
        ctx.update({"status": NodeStatus.ERROR.value, "error": message})

    async def execute(self, ctx: "ExecutionContext", options: "ExecuteOptions") -> None:
        images = ctx.get_connected_inputs(ctx.node_id).images
        if not images:
            self._fail(ctx, "No input image connected")
            raise NodeValidationError("No input image connected")

        data = ctx.fresh_data()
        if not data.get("isConfigured"):
            self._fail(ctx, "Node not configured - open settings first")
            raise NodeValidationError("Node not configured - open settings first")

        source = images[0]
        ctx.update({"sourceImage": source, "status": NodeStatus.LOADING.value, "error": None})
        rows = int(data.get("gridRows") or 1)
        cols = int(data.get("gridCols") or 1)

        try:
            with ctx.buffers.scratch() as workdir:
                path = await ctx.guard(ctx.buffers.fetch(source, workdir, "grid"))
                cells = await asyncio.to_thread(_split_file, path, rows, cols)
        except ExecutionCancelled:
            ctx.update({"status": NodeStatus.IDLE.value, "error": None})
            raise
        except Exception as exc:
            message = str(exc) or "Failed to split image"
            self._fail(ctx, message)
            if isinstance(exc, ExecutionError):
                raise
            raise MediaProcessingError(message) from exc

        for index, child in enumerate(data.get("childNodeIds") or []):
            if index >= len(cells):
                break
            target = child.get("imageInput") if isinstance(child, dict) else child
            if not target:
                continue
            image, width, height = cells[index]
            ctx.update_node_data(target, {
                "image": image,
                "filename": f"split-{index // cols + 1}-{index % cols + 1}.png",
                "dimensions": {"width": width, "height": height},
            })
        logger.info("Split node %s into %dx%d cells", ctx.node_id, rows, cols)
        ctx.update({"status": NodeStatus.COMPLETE.value, "error": None})
