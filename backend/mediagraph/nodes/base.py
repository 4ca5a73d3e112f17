"""Base executor abstractions and the node/output kind enums."""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..engine.errors import (
    ExecutionCancelled, ExecutionError, MediaProcessingError, NodeValidationError,
)

if TYPE_CHECKING:
    from pathlib import Path

    from ..engine.context import ExecuteOptions, ExecutionContext

logger = logging.getLogger(__name__)


class NodeKind(str, Enum):
    IMAGE_INPUT = "imageInput"
    AUDIO_INPUT = "audioInput"
    ANNOTATION = "annotation"
    PROMPT = "prompt"
    PROMPT_CONSTRUCTOR = "promptConstructor"
    ARRAY = "array"
    GENERATE_IMAGE = "nanoBanana"
    GENERATE_VIDEO = "generateVideo"
    GENERATE_3D = "generate3d"
    GENERATE_AUDIO = "generateAudio"
    LLM_GENERATE = "llmGenerate"
    SPLIT_GRID = "splitGrid"
    OUTPUT = "output"
    OUTPUT_GALLERY = "outputGallery"
    IMAGE_COMPARE = "imageCompare"
    VIDEO_STITCH = "videoStitch"
    EASE_CURVE = "easeCurve"
    VIDEO_TRIM = "videoTrim"
    VIDEO_FRAME_GRAB = "videoFrameGrab"
    GLB_VIEWER = "glbViewer"


class OutputKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"
    MODEL_3D = "3d"


class NodeStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ExecutorDefinition:
    """Serializable executor description sent to clients."""
    node_type: str
    display_name: str
    category: str
    description: str
    output_kind: OutputKind | None
    default_data: dict[str, Any] = field(default_factory=dict)


class BaseExecutor(ABC):
    """Abstract base class for every node kind's executor."""

    CATEGORY: str = "Uncategorized"
    DISPLAY_NAME: str = ""
    DESCRIPTION: str = ""
    OUTPUT_KIND: OutputKind | None = None
    OUTPUT_FIELD: str | None = None

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {}

    @classmethod
    def output_value(
        cls,
        data: dict[str, Any],
        source_handle: str | None,
        edge_data: dict[str, Any] | None,
    ) -> tuple[OutputKind | None, Any]:
        """What a downstream edge reads from a node of this kind."""
        if cls.OUTPUT_KIND is None or cls.OUTPUT_FIELD is None:
            return None, None
        return cls.OUTPUT_KIND, data.get(cls.OUTPUT_FIELD)

    @abstractmethod
    async def execute(self, ctx: "ExecutionContext", options: "ExecuteOptions") -> None:
        ...

    @classmethod
    def get_definition(cls, node_type: str) -> ExecutorDefinition:
        return ExecutorDefinition(
            node_type=node_type,
            display_name=cls.DISPLAY_NAME or cls.__name__,
            category=cls.CATEGORY,
            description=cls.DESCRIPTION or (cls.__doc__ or "").strip(),
            output_kind=cls.OUTPUT_KIND,
            default_data=cls.default_data(),
        )


class DerivationExecutor(BaseExecutor):
    """Local derivations. Failures are recorded on the node, never raised."""

    CATEGORY = "Derivation"

    @abstractmethod
    async def derive(self, ctx: "ExecutionContext") -> None:
        ...

    async def execute(self, ctx: "ExecutionContext", options: "ExecuteOptions") -> None:
        try:
            await self.derive(ctx)
        except ExecutionCancelled:
            logger.debug("%s node %s aborted", ctx.node.type, ctx.node_id)
        except Exception as exc:
            logger.exception("%s node %s failed", ctx.node.type, ctx.node_id)
            ctx.update({"error": str(exc) or type(exc).__name__})


class CompositionExecutor(BaseExecutor):
    """Local media composition through the media engine.

    Subclasses implement compose(), which returns the patch to apply on
    success. Scratch files live in a per-invocation directory that is
    removed on every exit path.
    """

    CATEGORY = "Video"
    OUTPUT_KIND = OutputKind.VIDEO
    OUTPUT_FIELD = "outputVideo"
    ENCODER_UNSUPPORTED = "Video encoding is not supported on this host"
    FAILURE_MESSAGE = "Video processing failed"

    @abstractmethod
    async def compose(
        self, ctx: "ExecutionContext", data: dict[str, Any], workdir: "Path",
    ) -> dict[str, Any]:
        ...

    async def _check_encoder(self, ctx: "ExecutionContext", data: dict[str, Any]) -> bool:
        supported = data.get("encoderSupported")
        if supported is None:
            supported = await ctx.media.encoder_supported()
            ctx.update({"encoderSupported": supported})
        return bool(supported)

    async def execute(self, ctx: "ExecutionContext", options: "ExecuteOptions") -> None:
        data = ctx.fresh_data()
        ctx.update({"status": NodeStatus.LOADING.value, "error": None, "progress": 0})

        if not await self._check_encoder(ctx, data):
            ctx.update({
                "status": NodeStatus.ERROR.value,
                "error": self.ENCODER_UNSUPPORTED,
                "progress": 0,
            })
            raise NodeValidationError(self.ENCODER_UNSUPPORTED)

        try:
            with ctx.buffers.scratch() as workdir:
                patch = await self.compose(ctx, data, workdir)
        except ExecutionCancelled:
            ctx.update({"status": NodeStatus.IDLE.value, "error": None, "progress": 0})
            raise
        except Exception as exc:
            message = str(exc) or self.FAILURE_MESSAGE
            logger.error("%s node %s failed: %s", ctx.node.type, ctx.node_id, message)
            ctx.update({
                "status": NodeStatus.ERROR.value,
                "error": message,
                "progress": 0,
            })
            if isinstance(exc, ExecutionError):
                raise
            raise MediaProcessingError(message) from exc

        ctx.update({
            **patch,
            "status": NodeStatus.COMPLETE.value,
            "error": None,
            "progress": 100,
        })

    def report_progress(self, ctx: "ExecutionContext"):
        """Progress callback writing 0-100 into the node."""
        def callback(value: float) -> None:
            ctx.update({"progress": round(max(0.0, min(100.0, value)), 1)})
        return callback
