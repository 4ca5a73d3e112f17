"""Data-source nodes: user-provided images and audio."""
from typing import TYPE_CHECKING, Any

from .base import BaseExecutor, NodeKind, OutputKind
from .registry import NodeRegistry

if TYPE_CHECKING:
    from ..engine.context import ExecuteOptions, ExecutionContext


@NodeRegistry.register(NodeKind.IMAGE_INPUT)
class ImageInputExecutor(BaseExecutor):
    """Uploaded or split image. Nothing to execute."""

    CATEGORY = "Input"
    DISPLAY_NAME = "Image Input"
    OUTPUT_KIND = OutputKind.IMAGE
    OUTPUT_FIELD = "image"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"image": None, "filename": None, "dimensions": None}

    async def execute(self, ctx: "ExecutionContext", options: "ExecuteOptions") -> None:
        return None


@NodeRegistry.register(NodeKind.AUDIO_INPUT)
class AudioInputExecutor(BaseExecutor):
    """Uploaded audio; a connected audio source replaces the upload."""

    CATEGORY = "Input"
    DISPLAY_NAME = "Audio Input"
    OUTPUT_KIND = OutputKind.AUDIO
    OUTPUT_FIELD = "audioFile"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"audioFile": None, "filename": None, "format": None, "duration": None}

    async def execute(self, ctx: "ExecutionContext", options: "ExecuteOptions") -> None:
        audio = ctx.get_connected_inputs(ctx.node_id).audio
        if audio and audio[0]:
            ctx.update({"audioFile": audio[0]})
