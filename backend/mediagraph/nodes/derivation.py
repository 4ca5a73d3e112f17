"""Local derivation nodes: prompts, arrays, galleries, comparisons, outputs.

None of these call the generation service. Failures are recorded on the
node and swallowed (see DerivationExecutor).
"""
import asyncio
import json
import logging
import re
import shutil
from typing import TYPE_CHECKING, Any

import httpx

from ..engine.errors import GenerationError
from ..engine.history import now_ms
from .base import DerivationExecutor, NodeKind, OutputKind
from .registry import NodeRegistry

if TYPE_CHECKING:
    from ..engine.context import ExecutionContext

logger = logging.getLogger(__name__)

VAR_TAG_RE = re.compile(r'<var="(\w+)">([\s\S]*?)</var>')
VAR_REF_RE = re.compile(r"@(\w+)")
SLASH_REGEX_RE = re.compile(r"^/(.+)/([a-z]*)$", re.IGNORECASE)

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}

VIDEO_HINTS = (".mp4", ".webm", "fal.media")


def parse_var_tags(text: str) -> list[tuple[str, str]]:
    """Inline `<var="name">value</var>` definitions, in order."""
    return VAR_TAG_RE.findall(text)


def _compile_split_pattern(pattern: str) -> re.Pattern:
    # accepts `/pattern/flags` as well as a bare pattern
    match = SLASH_REGEX_RE.match(pattern)
    if not match:
        return re.compile(pattern)
    flags = 0
    for flag in match.group(2).lower():
        flags |= _REGEX_FLAGS.get(flag, 0)
    return re.compile(match.group(1), flags)


def split_text(
    text: str | None,
    split_mode: str = "delimiter",
    delimiter: str = ",",
    regex_pattern: str = "",
    trim_items: bool = True,
    remove_empty: bool = True,
) -> list[str]:
    """Split text into array items. Raises re.error on a bad pattern."""
    source = text or ""
    if not source:
        return []
    if split_mode == "newline":
        items = re.split(r"\r?\n", source)
    elif split_mode == "regex":
        items = _compile_split_pattern(regex_pattern).split(source) if regex_pattern else [source]
    else:
        items = source.split(delimiter) if delimiter else [source]
    # capture groups can yield None entries
    items = [item or "" for item in items]
    if trim_items:
        items = [item.strip() for item in items]
    if remove_empty:
        items = [item for item in items if item]
    return items


def looks_like_video(content: str) -> bool:
    return content.startswith("data:video/") or any(h in content for h in VIDEO_HINTS)


@NodeRegistry.register(NodeKind.PROMPT)
class PromptExecutor(DerivationExecutor):
    """Free text, optionally exposed to prompt constructors as @variableName."""

    DISPLAY_NAME = "Prompt"
    OUTPUT_KIND = OutputKind.TEXT
    OUTPUT_FIELD = "prompt"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"prompt": ""}

    async def derive(self, ctx: "ExecutionContext") -> None:
        text = ctx.get_connected_inputs(ctx.node_id).text
        if text is not None:
            ctx.update({"prompt": text})


def _constructor_text(data: dict[str, Any]) -> str | None:
    output = data.get("outputText")
    return output if output is not None else data.get("template")


@NodeRegistry.register(NodeKind.PROMPT_CONSTRUCTOR)
class PromptConstructorExecutor(DerivationExecutor):
    """Fills @name references in a template from connected text nodes."""

    DISPLAY_NAME = "Prompt Constructor"
    OUTPUT_KIND = OutputKind.TEXT

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"template": "", "outputText": None, "unresolvedVars": []}

    @classmethod
    def output_value(cls, data, source_handle, edge_data):
        return OutputKind.TEXT, _constructor_text(data)

    @staticmethod
    def _source_text(node) -> str | None:
        if node.type == NodeKind.PROMPT.value:
            return node.data.get("prompt") or None
        if node.type == NodeKind.LLM_GENERATE.value:
            return node.data.get("outputText") or None
        if node.type == NodeKind.PROMPT_CONSTRUCTOR.value:
            return _constructor_text(node.data)
        return None

    async def derive(self, ctx: "ExecutionContext") -> None:
        template = ctx.fresh_data().get("template") or ""
        nodes = {n.id: n for n in ctx.get_nodes()}
        edges = sorted(
            (e for e in ctx.get_edges() if e.target == ctx.node_id and e.target_handle == "text"),
            key=lambda e: e.sort_key,
        )
        sources = [nodes[e.source] for e in edges if e.source in nodes]

        # named prompt variables take precedence over inline tags
        variables: dict[str, str] = {}
        for source in sources:
            name = source.data.get("variableName")
            if source.type == NodeKind.PROMPT.value and name:
                variables[name] = source.data.get("prompt") or ""
        for source in sources:
            text = self._source_text(source)
            if not text:
                continue
            for name, value in parse_var_tags(text):
                variables.setdefault(name, value)

        resolved = template
        unresolved: list[str] = []
        for name in VAR_REF_RE.findall(template):
            if name in variables:
                resolved = resolved.replace(f"@{name}", variables[name])
            elif name not in unresolved:
                unresolved.append(name)

        ctx.update({"outputText": resolved, "unresolvedVars": unresolved})


@NodeRegistry.register(NodeKind.ARRAY)
class ArrayExecutor(DerivationExecutor):
    """Splits text into items; edges can pick one item by index."""

    DISPLAY_NAME = "Array"
    OUTPUT_KIND = OutputKind.TEXT

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {
            "inputText": "",
            "splitMode": "delimiter",
            "delimiter": ",",
            "regexPattern": "",
            "trimItems": True,
            "removeEmpty": True,
            "outputItems": [],
            "outputText": "[]",
            "error": None,
        }

    @classmethod
    def output_value(cls, data, source_handle, edge_data):
        items = data.get("outputItems") or []
        index = (edge_data or {}).get("arrayItemIndex")
        if index is None and source_handle and source_handle.startswith("text-"):
            suffix = source_handle[len("text-"):]
            index = int(suffix) if suffix.isdigit() else None
        if isinstance(index, int) and not isinstance(index, bool) and index >= 0:
            return OutputKind.TEXT, items[index] if index < len(items) else None
        return OutputKind.TEXT, data.get("outputText")

    async def derive(self, ctx: "ExecutionContext") -> None:
        data = ctx.fresh_data()
        text = ctx.get_connected_inputs(ctx.node_id).text
        patch: dict[str, Any] = {}
        if text is not None and text != data.get("inputText"):
            patch["inputText"] = text
        else:
            text = data.get("inputText")

        try:
            items = split_text(
                text,
                split_mode=data.get("splitMode") or "delimiter",
                delimiter=data.get("delimiter", ","),
                regex_pattern=data.get("regexPattern") or "",
                trim_items=data.get("trimItems", True),
                remove_empty=data.get("removeEmpty", True),
            )
            error = None
        except re.error as exc:
            items, error = [], str(exc) or "Invalid split pattern"

        ctx.update({
            **patch,
            "outputItems": items,
            "outputText": json.dumps(items, ensure_ascii=False, separators=(",", ":")),
            "error": error,
        })


@NodeRegistry.register(NodeKind.ANNOTATION)
class AnnotationExecutor(DerivationExecutor):
    """Passes the upstream image through until the user draws on it."""

    DISPLAY_NAME = "Annotation"
    OUTPUT_KIND = OutputKind.IMAGE
    OUTPUT_FIELD = "outputImage"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"sourceImage": None, "annotations": [], "outputImage": None}

    async def derive(self, ctx: "ExecutionContext") -> None:
        images = ctx.get_connected_inputs(ctx.node_id).images
        if not images:
            return
        image = images[0]
        data = ctx.fresh_data()
        ctx.update({"sourceImage": image})
        output = data.get("outputImage")
        if not output or output == data.get("sourceImage"):
            ctx.update({"outputImage": image})


@NodeRegistry.register(NodeKind.OUTPUT_GALLERY)
class OutputGalleryExecutor(DerivationExecutor):
    """Accumulates upstream images, newest first, without duplicates."""

    DISPLAY_NAME = "Output Gallery"
    CATEGORY = "Output"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"images": []}

    async def derive(self, ctx: "ExecutionContext") -> None:
        images = ctx.get_connected_inputs(ctx.node_id).images
        existing = list(ctx.fresh_data().get("images") or [])
        seen = set(existing)
        new_images = [img for img in images if img not in seen]
        if new_images:
            ctx.update({"images": [*new_images, *existing]})


@NodeRegistry.register(NodeKind.IMAGE_COMPARE)
class ImageCompareExecutor(DerivationExecutor):
    DISPLAY_NAME = "Image Compare"
    CATEGORY = "Output"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"imageA": None, "imageB": None}

    async def derive(self, ctx: "ExecutionContext") -> None:
        images = ctx.get_connected_inputs(ctx.node_id).images
        ctx.update({
            "imageA": images[0] if len(images) > 0 else None,
            "imageB": images[1] if len(images) > 1 else None,
        })


@NodeRegistry.register(NodeKind.OUTPUT)
class OutputExecutor(DerivationExecutor):
    """Final result display; audio wins over video, video over image."""

    DISPLAY_NAME = "Output"
    CATEGORY = "Output"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"image": None, "outputFilename": ""}

    async def derive(self, ctx: "ExecutionContext") -> None:
        inputs = ctx.get_connected_inputs(ctx.node_id)

        if inputs.audio:
            content = inputs.audio[0]
            ctx.update({"audio": content, "image": None, "video": None, "contentType": "audio"})
            self._save(ctx, {"audio": content})
        elif inputs.videos:
            content = inputs.videos[0]
            ctx.update({"image": content, "video": content, "contentType": "video"})
            self._save(ctx, {"video": content})
        elif inputs.images:
            content = inputs.images[0]
            if looks_like_video(content):
                ctx.update({"image": content, "video": content, "contentType": "video"})
                self._save(ctx, {"video": content})
            else:
                ctx.update({"image": content, "video": None, "contentType": "image"})
                self._save(ctx, {"image": content})

    @staticmethod
    def _save(ctx: "ExecutionContext", content: dict[str, str]) -> None:
        if not ctx.save_directory_path:
            return
        body = {
            "directoryPath": f"{ctx.save_directory_path}/outputs",
            **content,
            "customFilename": ctx.fresh_data().get("outputFilename") or None,
            "createDirectory": True,
        }
        node_id = ctx.node_id

        async def _send() -> None:
            try:
                await ctx.client.save_generation(body)
            except (GenerationError, httpx.HTTPError) as exc:
                logger.error("Failed to save output of node %s: %s", node_id, exc)

        ctx.track_save(f"output-{node_id}-{now_ms()}", asyncio.create_task(_send()))


@NodeRegistry.register(NodeKind.GLB_VIEWER)
class GLBViewerExecutor(DerivationExecutor):
    """Downloads the upstream 3D model into a transient reference."""

    DISPLAY_NAME = "3D Viewer"
    CATEGORY = "Output"
    OUTPUT_KIND = OutputKind.IMAGE
    OUTPUT_FIELD = "capturedImage"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {"glbUrl": None, "filename": None, "capturedImage": None}

    async def derive(self, ctx: "ExecutionContext") -> None:
        model3d = ctx.get_connected_inputs(ctx.node_id).model3d
        if not model3d:
            return
        with ctx.buffers.scratch() as workdir:
            path = await ctx.guard(ctx.buffers.fetch(model3d, workdir, "model"))
            if path.parent != workdir:
                local = workdir / f"model{path.suffix or '.glb'}"
                shutil.copyfile(path, local)
                path = local
            ref = ctx.buffers.create_ref(path, "model/gltf-binary")
        ctx.buffers.release(ctx.fresh_data().get("glbUrl"))
        ctx.update({"glbUrl": ref, "filename": "generated.glb", "capturedImage": None})
