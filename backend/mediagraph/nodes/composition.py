"""Video composition nodes backed by the local media engine."""
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..engine.errors import NodeValidationError
from ..media.buffers import encode_data_url
from ..media.compose import frame_seek_time
from ..media.easing import DEFAULT_BEZIER_HANDLES, resolve_easing
from .base import CompositionExecutor, NodeKind, NodeStatus, OutputKind
from .registry import NodeRegistry

if TYPE_CHECKING:
    from ..engine.context import ExecutionContext

logger = logging.getLogger(__name__)

EASE_SETTINGS_HANDLE = "easeCurve"


def _video_defaults(**extra: Any) -> dict[str, Any]:
    return {
        "outputVideo": None,
        "status": NodeStatus.IDLE.value,
        "error": None,
        "progress": 0,
        "encoderSupported": None,
        **extra,
    }


class VideoOutputMixin:
    """Publishing for executors that replace `outputVideo`."""

    async def _fetch_first_video(
        self, ctx: "ExecutionContext", workdir: Path, missing_message: str,
    ) -> Path:
        videos = ctx.get_connected_inputs(ctx.node_id).videos
        if not videos:
            raise NodeValidationError(missing_message)
        return await ctx.guard(ctx.buffers.fetch(videos[0], workdir, "source"))

    def _publish(self, ctx: "ExecutionContext", output: Path) -> dict[str, Any]:
        # the old reference goes away before the new output lands
        previous = ctx.fresh_data().get("outputVideo")
        if ctx.buffers.release(previous):
            logger.debug("Released previous output of node %s", ctx.node_id)
        value = ctx.buffers.publish(output, ctx.services.inline_output_limit_bytes, "video/mp4")
        return {"outputVideo": value}


@NodeRegistry.register(NodeKind.VIDEO_STITCH)
class VideoStitchExecutor(VideoOutputMixin, CompositionExecutor):
    """Concatenates connected clips, optionally looped and scored."""

    DISPLAY_NAME = "Video Stitch"
    FAILURE_MESSAGE = "Stitch failed"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return _video_defaults(clips=[], loopCount=1)

    async def compose(self, ctx, data, workdir):
        inputs = ctx.get_connected_inputs(ctx.node_id)
        if len(inputs.videos) < 2:
            raise NodeValidationError("Need at least 2 video clips to stitch")

        clips = []
        for idx, video in enumerate(inputs.videos):
            clips.append(await ctx.guard(ctx.buffers.fetch(video, workdir, f"clip-{idx}")))
        loop_count = max(1, int(data.get("loopCount") or 1))

        audio = None
        if inputs.audio and inputs.audio[0]:
            audio = await ctx.guard(ctx.buffers.fetch(inputs.audio[0], workdir, "audio"))

        output = workdir / "stitched.mp4"
        await ctx.guard(ctx.media.stitch(
            clips * loop_count, output, audio=audio, on_progress=self.report_progress(ctx),
        ))
        return self._publish(ctx, output)


@NodeRegistry.register(NodeKind.EASE_CURVE)
class EaseCurveExecutor(VideoOutputMixin, CompositionExecutor):
    """Warps playback speed along an easing curve to a fixed duration."""

    DISPLAY_NAME = "Ease Curve"
    FAILURE_MESSAGE = "Ease curve processing failed"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return _video_defaults(
            bezierHandles=list(DEFAULT_BEZIER_HANDLES),
            easingPreset=None,
            inheritedFrom=None,
            outputDuration=1.5,
        )

    def _inherit_settings(self, ctx: "ExecutionContext", data: dict[str, Any]) -> tuple[list[float], str | None]:
        handles = list(data.get("bezierHandles") or DEFAULT_BEZIER_HANDLES)
        preset = data.get("easingPreset")
        settings = ctx.get_connected_inputs(ctx.node_id).ease_curve
        if settings is None:
            return handles, preset

        handles = list(settings.bezier_handles)
        preset = settings.easing_preset
        parents = sorted(
            (e for e in ctx.get_edges()
             if e.target == ctx.node_id and e.target_handle == EASE_SETTINGS_HANDLE),
            key=lambda e: e.sort_key,
        )
        ctx.update({
            "bezierHandles": handles,
            "easingPreset": preset,
            "inheritedFrom": parents[0].source if parents else None,
        })
        return handles, preset

    async def compose(self, ctx, data, workdir):
        handles, preset = self._inherit_settings(ctx, data)
        source = await self._fetch_first_video(
            ctx, workdir, "Connect a video input to apply ease curve",
        )
        try:
            easing = resolve_easing(preset, handles)
        except ValueError as exc:
            raise NodeValidationError(str(exc)) from exc

        duration = await ctx.guard(ctx.media.probe_duration(source))
        output_duration = float(data.get("outputDuration") or 1.5)
        output = workdir / "eased.mp4"
        await ctx.guard(ctx.media.apply_speed_curve(
            source, output, easing, output_duration,
            source_duration=duration, on_progress=self.report_progress(ctx),
        ))
        return self._publish(ctx, output)


@NodeRegistry.register(NodeKind.VIDEO_TRIM)
class VideoTrimExecutor(VideoOutputMixin, CompositionExecutor):
    """Cuts [startTime, endTime) out of the connected clip, keeping audio."""

    DISPLAY_NAME = "Video Trim"
    FAILURE_MESSAGE = "Video trim failed"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return _video_defaults(startTime=0.0, endTime=0.0, duration=None)

    async def compose(self, ctx, data, workdir):
        if not ctx.get_connected_inputs(ctx.node_id).videos:
            raise NodeValidationError("Connect a video input to trim")

        # slider values may have moved since the run started
        fresh = ctx.fresh_data()
        start = float(fresh.get("startTime") or 0.0)
        end = float(fresh.get("endTime") or 0.0)
        if end <= 0 or start < 0 or start >= end:
            raise NodeValidationError("Set valid start/end trim times")

        source = await self._fetch_first_video(ctx, workdir, "Connect a video input to trim")
        output = workdir / "trimmed.mp4"
        await ctx.guard(ctx.media.trim(
            source, output, start, end, on_progress=self.report_progress(ctx),
        ))
        return self._publish(ctx, output)


@NodeRegistry.register(NodeKind.VIDEO_FRAME_GRAB)
class VideoFrameGrabExecutor(VideoOutputMixin, CompositionExecutor):
    """Full-resolution PNG of the first or last frame."""

    DISPLAY_NAME = "Frame Grab"
    OUTPUT_KIND = OutputKind.IMAGE
    OUTPUT_FIELD = "outputImage"
    FAILURE_MESSAGE = "Frame extraction failed"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {
            "framePosition": "first",
            "outputImage": None,
            "status": NodeStatus.IDLE.value,
            "error": None,
            "progress": 0,
            "encoderSupported": None,
        }

    async def compose(self, ctx, data, workdir):
        source = await self._fetch_first_video(
            ctx, workdir, "Connect a video input to extract a frame",
        )
        position = data.get("framePosition") or "first"
        duration = 0.0
        if position != "first":
            duration = await ctx.guard(ctx.media.probe_duration(source))
        seek = frame_seek_time(position, duration)
        png = await ctx.guard(ctx.media.extract_frame(
            source, seek, timeout_s=ctx.services.frame_grab_timeout_s,
        ))
        return {"outputImage": encode_data_url(png, "image/png")}
