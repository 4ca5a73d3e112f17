"""Media composition engine: probing, stitching, trimming, speed curves, frames.

Container work (concat, trim, final encode) goes through ffmpeg/ffprobe
subprocesses; frame-level work (speed-curve remap, still extraction) goes
through OpenCV in a worker thread.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import cv2
import numpy as np

from ..engine.errors import MediaProcessingError
from .easing import EasingFn, frame_index_map, warp_source_times

logger = logging.getLogger(__name__)

ProgressFn = Callable[[float], None]

FIRST_FRAME_SEEK_S = 0.001
LAST_FRAME_EPSILON_S = 0.1
FALLBACK_DURATION_S = 5.0
DEFAULT_FPS = 30.0


def frame_seek_time(position: str, duration: float) -> float:
    """Seek target for a frame grab: just past zero, or just before the end."""
    if position == "first":
        return FIRST_FRAME_SEEK_S
    return max(0.0, duration - LAST_FRAME_EPSILON_S)


def _parse_rate(rate: str | None) -> float:
    if not rate or rate in ("0/0", "N/A"):
        return 0.0
    if "/" in rate:
        num, den = rate.split("/", 1)
        return float(num) / float(den) if float(den) else 0.0
    return float(rate)


@dataclass
class VideoInfo:
    """Properties of a media file."""
    duration: float
    width: int = 0
    height: int = 0
    fps: float = 0.0
    frame_count: int = 0
    has_audio: bool = False

    @classmethod
    def from_ffprobe(cls, info: dict) -> "VideoInfo":
        streams = info.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), {})
        fmt = info.get("format") or {}
        duration = float(fmt.get("duration") or video.get("duration") or 0.0)
        fps = _parse_rate(video.get("avg_frame_rate")) or _parse_rate(video.get("r_frame_rate"))
        return cls(
            duration=duration,
            width=int(video.get("width") or 0),
            height=int(video.get("height") or 0),
            fps=fps,
            frame_count=int(video.get("nb_frames") or round(duration * fps) or 0),
            has_audio=any(s.get("codec_type") == "audio" for s in streams),
        )

    @classmethod
    def from_capture(cls, cap: cv2.VideoCapture) -> "VideoInfo":
        fps = cap.get(cv2.CAP_PROP_FPS) or 0.0
        frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        return cls(
            duration=frames / fps if fps else 0.0,
            width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            fps=fps,
            frame_count=frames,
        )


class MediaEngine:
    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        video_codec: str = "libx264",
        crf: int = 18,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.video_codec = video_codec
        self.crf = crf
        self._encoder_ok: bool | None = None

    @classmethod
    def from_settings(cls, settings) -> "MediaEngine":
        return cls(
            ffmpeg_bin=settings.ffmpeg_bin,
            ffprobe_bin=settings.ffprobe_bin,
            video_codec=settings.video_codec,
            crf=settings.output_crf,
        )

    def _encode_args(self) -> list[str]:
        return [
            "-c:v", self.video_codec,
            "-crf", str(self.crf),
            "-preset", "veryfast",
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
        ]

    async def _run(
        self,
        cmd: list[str],
        on_line: Callable[[str], None] | None = None,
    ) -> str:
        """Run a subprocess, streaming stdout lines. Returns stdout text."""
        logger.debug("exec: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise MediaProcessingError(f"{cmd[0]} is not installed") from exc

        lines: list[str] = []

        async def pump_stdout() -> None:
            async for raw in proc.stdout:
                line = raw.decode(errors="replace").strip()
                lines.append(line)
                if on_line is not None:
                    on_line(line)

        try:
            _, stderr = await asyncio.gather(pump_stdout(), proc.stderr.read())
            returncode = await proc.wait()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if returncode != 0:
            tail = stderr.decode(errors="replace").strip()[-300:]
            logger.warning("%s exited with %d: %s", Path(cmd[0]).name, returncode, tail)
            raise MediaProcessingError(f"{Path(cmd[0]).name} failed: {tail or returncode}")
        return "\n".join(lines)

    async def encoder_supported(self) -> bool:
        """Test encode a tiny null source once and cache the answer."""
        if self._encoder_ok is not None:
            return self._encoder_ok
        cmd = [
            self.ffmpeg_bin, "-y", "-v", "error",
            "-f", "lavfi", "-i", "nullsrc=s=64x64:d=0.1",
            "-c:v", self.video_codec,
            "-f", "null", "-",
        ]
        try:
            await self._run(cmd)
            self._encoder_ok = True
        except MediaProcessingError as exc:
            logger.info("Encoder %s unavailable: %s", self.video_codec, exc)
            self._encoder_ok = False
        return self._encoder_ok

    async def probe(self, path: Path) -> VideoInfo:
        cmd = [
            self.ffprobe_bin, "-v", "error",
            "-show_entries", "format=duration",
            "-show_entries", "stream=codec_type,width,height,avg_frame_rate,r_frame_rate,nb_frames,duration",
            "-of", "json",
            str(path),
        ]
        try:
            return VideoInfo.from_ffprobe(json.loads(await self._run(cmd) or "{}"))
        except (MediaProcessingError, ValueError) as exc:
            logger.debug("ffprobe failed for %s (%s), trying OpenCV", path, exc)
        return await asyncio.to_thread(self._probe_capture, path)

    @staticmethod
    def _probe_capture(path: Path) -> VideoInfo:
        cap = cv2.VideoCapture(str(path))
        try:
            if not cap.isOpened():
                raise MediaProcessingError(f"Failed to open video: {path.name}")
            return VideoInfo.from_capture(cap)
        finally:
            cap.release()

    async def probe_duration(self, path: Path, fallback: float = FALLBACK_DURATION_S) -> float:
        try:
            duration = (await self.probe(path)).duration
        except MediaProcessingError:
            duration = 0.0
        if duration <= 0:
            logger.info("Could not read duration of %s, assuming %.1fs", path.name, fallback)
            return fallback
        return duration

    def _progress_reader(self, total_s: float, on_progress: ProgressFn | None) -> Callable[[str], None]:
        def on_line(line: str) -> None:
            if on_progress is None or total_s <= 0:
                return
            key, _, value = line.partition("=")
            if key in ("out_time_us", "out_time_ms") and value.strip().lstrip("-").isdigit():
                # both keys carry microseconds
                done = int(value) / 1_000_000
                on_progress(min(99.0, max(0.0, done / total_s * 100)))
        return on_line

    async def stitch(
        self,
        clips: list[Path],
        output: Path,
        audio: Path | None = None,
        on_progress: ProgressFn | None = None,
    ) -> Path:
        """Concatenate clips in order into one H.264 file.

        Clips are letterboxed to the largest frame size. An external audio
        track starts at offset 0 and is cut to the video length; without
        one, clip audio is kept only when every clip has some.
        """
        if not clips:
            raise MediaProcessingError("Nothing to stitch")
        infos = [await self.probe(c) for c in clips]
        width = max(i.width for i in infos) or 1280
        height = max(i.height for i in infos) or 720
        width += width % 2
        height += height % 2
        fps = max(i.fps for i in infos) or DEFAULT_FPS
        total = sum(i.duration for i in infos)

        cmd = [self.ffmpeg_bin, "-y", "-v", "error", "-nostats", "-progress", "pipe:1"]
        for clip in clips:
            cmd += ["-i", str(clip)]
        if audio is not None:
            cmd += ["-i", str(audio)]

        keep_clip_audio = audio is None and all(i.has_audio for i in infos)
        filters: list[str] = []
        segments: list[str] = []
        for idx in range(len(clips)):
            filters.append(
                f"[{idx}:v]scale={width}:{height}:force_original_aspect_ratio=decrease,"
                f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={fps:.3f},"
                f"format=yuv420p[v{idx}]"
            )
            segments.append(f"[v{idx}]")
            if keep_clip_audio:
                filters.append(
                    f"[{idx}:a]aresample=48000,aformat=channel_layouts=stereo[a{idx}]"
                )
                segments.append(f"[a{idx}]")

        n = len(clips)
        if keep_clip_audio:
            filters.append(f"{''.join(segments)}concat=n={n}:v=1:a=1[vout][aout]")
        else:
            filters.append(f"{''.join(segments)}concat=n={n}:v=1:a=0[vout]")
        if audio is not None:
            filters.append(f"[{n}:a]atrim=0:{total:.3f},asetpts=PTS-STARTPTS[aout]")

        cmd += ["-filter_complex", ";".join(filters), "-map", "[vout]"]
        if keep_clip_audio or audio is not None:
            cmd += ["-map", "[aout]", "-c:a", "aac", "-b:a", "192k"]
        cmd += self._encode_args() + [str(output)]

        await self._run(cmd, self._progress_reader(total, on_progress))
        logger.info("Stitched %d clips (%.1fs) into %s", n, total, output.name)
        return output

    async def trim(
        self,
        source: Path,
        output: Path,
        start: float,
        end: float,
        on_progress: ProgressFn | None = None,
    ) -> Path:
        """Re-encode [start, end) of `source`, audio preserved."""
        info = await self.probe(source)
        if info.duration > 0:
            if start >= info.duration:
                raise MediaProcessingError("Trim start is beyond the end of the clip")
            end = min(end, info.duration)
        length = end - start
        cmd = [
            self.ffmpeg_bin, "-y", "-v", "error", "-nostats", "-progress", "pipe:1",
            "-ss", f"{start:.3f}", "-i", str(source), "-t", f"{length:.3f}",
            "-map", "0:v:0", "-map", "0:a?",
            "-c:a", "aac", "-b:a", "192k",
        ] + self._encode_args() + [str(output)]
        await self._run(cmd, self._progress_reader(length, on_progress))
        return output

    async def apply_speed_curve(
        self,
        source: Path,
        output: Path,
        easing: EasingFn,
        output_duration: float,
        source_duration: float | None = None,
        on_progress: ProgressFn | None = None,
    ) -> Path:
        """Remap playback speed so `output_duration` seconds follow the curve."""
        if output_duration <= 0:
            raise MediaProcessingError("Output duration must be positive")
        loop = asyncio.get_running_loop()

        def report(value: float) -> None:
            if on_progress is not None:
                loop.call_soon_threadsafe(on_progress, value)

        raw = output.with_name(f"{output.stem}.raw.mp4")
        await asyncio.to_thread(
            self._remap_frames, source, raw, easing, output_duration, source_duration, report,
        )
        cmd = [self.ffmpeg_bin, "-y", "-v", "error", "-i", str(raw), "-an"]
        cmd += self._encode_args() + [str(output)]
        await self._run(cmd)
        raw.unlink(missing_ok=True)
        return output

    @staticmethod
    def _remap_frames(
        source: Path,
        output: Path,
        easing: EasingFn,
        output_duration: float,
        source_duration: float | None,
        report: ProgressFn,
    ) -> None:
        cap = cv2.VideoCapture(str(source))
        writer: cv2.VideoWriter | None = None
        try:
            if not cap.isOpened():
                raise MediaProcessingError(f"Failed to open video: {source.name}")
            info = VideoInfo.from_capture(cap)
            fps = info.fps or DEFAULT_FPS
            duration = source_duration or info.duration or FALLBACK_DURATION_S
            frame_total = info.frame_count or int(round(duration * fps))

            times = warp_source_times(easing, duration, output_duration, fps)
            indices = frame_index_map(times, fps, frame_total)

            writer = cv2.VideoWriter(
                str(output), cv2.VideoWriter_fourcc(*"mp4v"), fps, (info.width, info.height),
            )
            if not writer.isOpened():
                raise MediaProcessingError("Failed to open video writer")

            # indices never decrease, so one forward pass over the source suffices
            position = -1
            frame: np.ndarray | None = None
            step = max(1, len(indices) // 50)
            for out_idx, src_idx in enumerate(indices):
                while position < src_idx:
                    ok, nxt = cap.read()
                    if not ok:
                        break
                    frame = nxt
                    position += 1
                if frame is None:
                    raise MediaProcessingError("Source video has no decodable frames")
                writer.write(frame)
                if out_idx % step == 0:
                    report(out_idx / len(indices) * 95)
        finally:
            cap.release()
            if writer is not None:
                writer.release()

    async def extract_frame(self, source: Path, seek_s: float, timeout_s: float = 30.0) -> bytes:
        """PNG bytes of the frame shown at `seek_s`, at full resolution."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._grab_png, source, seek_s), timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            raise MediaProcessingError("Frame extraction timed out") from None

    @staticmethod
    def _grab_png(source: Path, seek_s: float) -> bytes:
        cap = cv2.VideoCapture(str(source))
        try:
            if not cap.isOpened():
                raise MediaProcessingError("Failed to load video for frame extraction")
            cap.set(cv2.CAP_PROP_POS_MSEC, seek_s * 1000)
            ok, frame = cap.read()
            if not ok:
                # some containers refuse millisecond seeks; fall back to frame index
                frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
                fps = cap.get(cv2.CAP_PROP_FPS) or DEFAULT_FPS
                target = min(max(0, frames - 1), int(seek_s * fps))
                cap.set(cv2.CAP_PROP_POS_FRAMES, target)
                ok, frame = cap.read()
            if not ok:
                raise MediaProcessingError("Frame extraction failed")
            ok, encoded = cv2.imencode(".png", frame)
            if not ok:
                raise MediaProcessingError("Frame extraction failed")
            return encoded.tobytes()
        finally:
            cap.release()
