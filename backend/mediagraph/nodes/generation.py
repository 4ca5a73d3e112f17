"""Generation executors: image, video, 3D, audio and text via the generation service.

All kinds share one request/response template (GenerationExecutor); the
subclasses only differ in how inputs are validated, what goes into the
payload and where the result lands on the node.
"""
import asyncio
import logging
from abc import abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from ..engine.errors import ExecutionCancelled, GenerationError, NodeValidationError
from ..engine.history import (
    HistoryItem, calculate_generation_cost, now_ms, push_history, reconcile_history_id,
)
from ..services.generation_client import build_headers, build_llm_headers
from .base import BaseExecutor, NodeKind, NodeStatus, OutputKind
from .registry import NodeRegistry

if TYPE_CHECKING:
    from ..engine.context import ExecuteOptions, ExecutionContext
    from ..engine.inputs import ConnectedInputs

logger = logging.getLogger(__name__)

NETWORK_MESSAGE = "Network error. Check your connection and try again."


def _first(value: str | list[str] | None) -> str | None:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _pricing_amount(selected_model: dict[str, Any] | None) -> float | None:
    pricing = (selected_model or {}).get("pricing")
    if not pricing:
        return None
    return float(pricing.get("amount") or 0.0)


class GenerationExecutor(BaseExecutor):
    """Template for one round trip to the generation service."""

    CATEGORY = "Generate"
    MEDIA_TYPE: str | None = None
    DEFAULT_PROVIDER = "gemini"
    FAILURE_MESSAGE = "Generation failed"
    TIMEOUT_MESSAGE = "Request timed out. Try reducing image sizes or using a simpler prompt."

    # -- inputs ---------------------------------------------------------------

    def resolve_inputs(
        self, inputs: "ConnectedInputs", data: dict[str, Any], options: "ExecuteOptions",
    ) -> tuple[list[str], str | None]:
        if options.use_stored_fallback:
            images = list(inputs.images) or list(data.get("inputImages") or [])
            prompt = inputs.text if inputs.text is not None else data.get("inputPrompt")
        else:
            images = list(inputs.images)
            prompt = inputs.text or _first(inputs.dynamic_inputs.get("prompt")) or None
        return images, prompt

    def validate(
        self, data: dict[str, Any], images: list[str], prompt: str | None, inputs: "ConnectedInputs",
    ) -> None:
        if not prompt:
            raise NodeValidationError("Missing text input")

    def persisted_inputs(self, images: list[str], prompt: str | None) -> dict[str, Any]:
        return {"inputImages": images, "inputPrompt": prompt}

    # -- request --------------------------------------------------------------

    def provider(self, data: dict[str, Any]) -> str:
        return (data.get("selectedModel") or {}).get("provider") or self.DEFAULT_PROVIDER

    def headers(self, ctx: "ExecutionContext", data: dict[str, Any]) -> dict[str, str]:
        return build_headers(self.provider(data), ctx.provider_settings)

    def build_payload(
        self, data: dict[str, Any], images: list[str], prompt: str | None, inputs: "ConnectedInputs",
    ) -> dict[str, Any]:
        payload = {
            "images": images,
            "prompt": prompt,
            "selectedModel": data.get("selectedModel"),
            "parameters": data.get("parameters"),
            "dynamicInputs": dict(inputs.dynamic_inputs),
        }
        if self.MEDIA_TYPE:
            payload["mediaType"] = self.MEDIA_TYPE
        return payload

    async def send(self, ctx: "ExecutionContext", payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        return await ctx.client.generate(payload, headers)

    # -- results --------------------------------------------------------------

    @abstractmethod
    def apply_result(
        self,
        ctx: "ExecutionContext",
        data: dict[str, Any],
        result: dict[str, Any],
        images: list[str],
        prompt: str | None,
    ) -> bool:
        """Store a successful result. False when the response carried no output."""

    def add_cost(self, ctx: "ExecutionContext", data: dict[str, Any]) -> None:
        amount = _pricing_amount(data.get("selectedModel"))
        if amount is not None:
            ctx.add_incurred_cost(amount)

    def record_history(
        self,
        ctx: "ExecutionContext",
        data: dict[str, Any],
        history_field: str,
        index_field: str,
        item: HistoryItem,
        output: dict[str, Any],
    ) -> None:
        ctx.update({
            **output,
            "status": NodeStatus.COMPLETE.value,
            "error": None,
            history_field: push_history(data.get(history_field), item, ctx.services.history_limit),
            index_field: 0,
        })

    def spawn_save(
        self,
        ctx: "ExecutionContext",
        key: str,
        payload: dict[str, Any],
        history_field: str | None = None,
    ) -> None:
        """Fire-and-forget save, tracked under `key`.

        When storage assigns a different id, the history entry saved under
        `key` is renamed, provided the node still exists.
        """
        if not ctx.generations_path:
            return
        body = {"directoryPath": ctx.generations_path, **payload}
        if history_field:
            body["imageId"] = key
        node_id = ctx.node_id

        async def _save() -> None:
            try:
                saved = await ctx.client.save_generation(body)
            except (GenerationError, httpx.HTTPError) as exc:
                logger.error("Failed to save generation %s for node %s: %s", key, node_id, exc)
                return
            stored_id = saved.get("imageId")
            if not (history_field and saved.get("success") and stored_id and stored_id != key):
                return
            node = ctx.get_fresh_node(node_id)
            if node is None:
                return
            updated = reconcile_history_id(node.data.get(history_field), key, stored_id)
            if updated is not None:
                ctx.update_node_data(node_id, {history_field: updated})

        ctx.track_save(key, asyncio.create_task(_save()))

    # -- template -------------------------------------------------------------

    def _fail(self, ctx: "ExecutionContext", message: str) -> None:
        ctx.update({"status": NodeStatus.ERROR.value, "error": message})

    async def execute(self, ctx: "ExecutionContext", options: "ExecuteOptions") -> None:
        inputs = ctx.get_connected_inputs(ctx.node_id)
        data = ctx.fresh_data()
        images, prompt = self.resolve_inputs(inputs, data, options)

        try:
            self.validate(data, images, prompt, inputs)
        except NodeValidationError as exc:
            self._fail(ctx, str(exc))
            raise

        ctx.update({
            **self.persisted_inputs(images, prompt),
            "status": NodeStatus.LOADING.value,
            "error": None,
        })

        try:
            payload = self.build_payload(data, images, prompt, inputs)
            headers = self.headers(ctx, data)
            logger.info(
                "Calling %s for %s node %s", self.provider(data), ctx.node.type, ctx.node_id,
            )
            result = await ctx.guard(self.send(ctx, payload, headers))
            stored = bool(result.get("success")) and self.apply_result(ctx, data, result, images, prompt)
        except ExecutionCancelled as exc:
            if exc.user_initiated:
                ctx.update({"status": NodeStatus.IDLE.value, "error": None})
            else:
                self._fail(ctx, self.TIMEOUT_MESSAGE)
            raise
        except httpx.TimeoutException as exc:
            self._fail(ctx, self.TIMEOUT_MESSAGE)
            raise GenerationError(self.TIMEOUT_MESSAGE) from exc
        except httpx.TransportError as exc:
            self._fail(ctx, NETWORK_MESSAGE)
            raise GenerationError(NETWORK_MESSAGE) from exc
        except GenerationError as exc:
            self._fail(ctx, str(exc))
            raise
        except Exception as exc:
            message = str(exc) or self.FAILURE_MESSAGE
            logger.exception("%s node %s failed", ctx.node.type, ctx.node_id)
            self._fail(ctx, message)
            raise GenerationError(message) from exc

        if not stored:
            message = result.get("error") or self.FAILURE_MESSAGE
            self._fail(ctx, message)
            raise GenerationError(message)


@NodeRegistry.register(NodeKind.GENERATE_IMAGE)
class GenerateImageExecutor(GenerationExecutor):
    """Image generation (optionally image-to-3D for 3D-capable models)."""

    DISPLAY_NAME = "Generate Image"
    OUTPUT_KIND = OutputKind.IMAGE
    OUTPUT_FIELD = "outputImage"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {
            "inputImages": [],
            "inputPrompt": None,
            "outputImage": None,
            "aspectRatio": "1:1",
            "resolution": "1K",
            "model": "nano-banana-pro",
            "selectedModel": {
                "provider": "gemini",
                "modelId": "nano-banana-pro",
                "displayName": "Nano Banana Pro",
            },
            "useGoogleSearch": False,
            "status": NodeStatus.IDLE.value,
            "error": None,
            "imageHistory": [],
            "selectedHistoryIndex": 0,
        }

    @staticmethod
    def _is_3d_model(data: dict[str, Any]) -> bool:
        capabilities = (data.get("selectedModel") or {}).get("capabilities") or []
        return any("3d" in c for c in capabilities)

    def build_payload(self, data, images, prompt, inputs):
        payload = {
            "images": images,
            "prompt": prompt,
            "aspectRatio": data.get("aspectRatio"),
            "resolution": data.get("resolution"),
            "model": data.get("model"),
            "useGoogleSearch": data.get("useGoogleSearch"),
            "selectedModel": data.get("selectedModel"),
            "parameters": data.get("parameters"),
            "dynamicInputs": dict(inputs.dynamic_inputs),
        }
        if self._is_3d_model(data):
            payload["mediaType"] = "3d"
        return payload

    def add_cost(self, ctx, data):
        selected = data.get("selectedModel")
        amount = _pricing_amount(selected)
        if amount is not None:
            ctx.add_incurred_cost(amount)
        elif not selected or selected.get("provider") == "gemini":
            ctx.add_incurred_cost(calculate_generation_cost(data.get("model"), data.get("resolution")))

    def apply_result(self, ctx, data, result, images, prompt):
        if result.get("model3dUrl"):
            ctx.update({
                "output3dUrl": result["model3dUrl"],
                "outputImage": None,
                "status": NodeStatus.COMPLETE.value,
                "error": None,
            })
            amount = _pricing_amount(data.get("selectedModel"))
            if amount is not None:
                ctx.add_incurred_cost(amount)
            return True

        image = result.get("image")
        if not image:
            return False

        timestamp = now_ms()
        image_id = str(timestamp)
        ctx.add_to_global_history({
            "image": image,
            "timestamp": timestamp,
            "prompt": prompt,
            "aspectRatio": data.get("aspectRatio"),
            "model": data.get("model"),
        })
        item = HistoryItem(
            id=image_id,
            timestamp=timestamp,
            prompt=prompt or "",
            model=data.get("model") or "",
            aspect_ratio=data.get("aspectRatio"),
        )
        self.record_history(
            ctx, data, "imageHistory", "selectedHistoryIndex", item,
            {"outputImage": image, "output3dUrl": None},
        )
        self._append_to_galleries(ctx, image)
        self.add_cost(ctx, data)
        self.spawn_save(ctx, image_id, {"image": image, "prompt": prompt}, "imageHistory")
        return True

    @staticmethod
    def _append_to_galleries(ctx: "ExecutionContext", image: str) -> None:
        targets = {e.target for e in ctx.get_edges() if e.source == ctx.node_id}
        for target in targets:
            node = ctx.get_fresh_node(target)
            if node is None or node.type != NodeKind.OUTPUT_GALLERY.value:
                continue
            existing = node.data.get("images") or []
            if image not in existing:
                ctx.update_node_data(target, {"images": [image, *existing]})


@NodeRegistry.register(NodeKind.GENERATE_VIDEO)
class GenerateVideoExecutor(GenerationExecutor):
    """Video generation from a prompt and/or reference images."""

    DISPLAY_NAME = "Generate Video"
    OUTPUT_KIND = OutputKind.VIDEO
    OUTPUT_FIELD = "outputVideo"
    MEDIA_TYPE = "video"
    FAILURE_MESSAGE = "Video generation failed"
    TIMEOUT_MESSAGE = "Request timed out. Video generation may take longer."

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {
            "inputImages": [],
            "inputPrompt": None,
            "outputVideo": None,
            "selectedModel": None,
            "status": NodeStatus.IDLE.value,
            "error": None,
            "videoHistory": [],
            "selectedVideoHistoryIndex": 0,
        }

    def resolve_inputs(self, inputs, data, options):
        if options.use_stored_fallback:
            return super().resolve_inputs(inputs, data, options)
        return list(inputs.images), inputs.text

    def validate(self, data, images, prompt, inputs):
        dynamic = inputs.dynamic_inputs
        has_prompt = prompt or dynamic.get("prompt") or dynamic.get("negative_prompt")
        if not has_prompt and not images:
            raise NodeValidationError("Missing required inputs")
        if not (data.get("selectedModel") or {}).get("modelId"):
            raise NodeValidationError("No model selected")

    def apply_result(self, ctx, data, result, images, prompt):
        video = result.get("video") or result.get("videoUrl")
        output = video or result.get("image")
        if not output:
            return False
        timestamp = now_ms()
        video_id = str(timestamp)
        item = HistoryItem(
            id=video_id,
            timestamp=timestamp,
            prompt=prompt or "",
            model=(data.get("selectedModel") or {}).get("modelId") or "",
        )
        self.record_history(
            ctx, data, "videoHistory", "selectedVideoHistoryIndex", item, {"outputVideo": output},
        )
        self.add_cost(ctx, data)
        content = {"video": video} if video else {"image": result.get("image")}
        self.spawn_save(ctx, video_id, {**content, "prompt": prompt}, "videoHistory")
        return True


@NodeRegistry.register(NodeKind.GENERATE_3D)
class Generate3DExecutor(GenerationExecutor):
    """Text-to-3D or image-to-3D generation."""

    DISPLAY_NAME = "Generate 3D"
    OUTPUT_KIND = OutputKind.MODEL_3D
    OUTPUT_FIELD = "output3dUrl"
    MEDIA_TYPE = "3d"
    DEFAULT_PROVIDER = "fal"
    FAILURE_MESSAGE = "3D generation failed"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {
            "inputImages": [],
            "inputPrompt": None,
            "output3dUrl": None,
            "selectedModel": None,
            "status": NodeStatus.IDLE.value,
            "error": None,
        }

    def validate(self, data, images, prompt, inputs):
        if not prompt and not images:
            raise NodeValidationError("Missing text or image input")

    def build_payload(self, data, images, prompt, inputs):
        payload = super().build_payload(data, images, prompt, inputs)
        payload["prompt"] = prompt or ""
        return payload

    def apply_result(self, ctx, data, result, images, prompt):
        url = result.get("model3dUrl")
        if not url:
            return False
        ctx.update({"output3dUrl": url, "status": NodeStatus.COMPLETE.value, "error": None})
        self.add_cost(ctx, data)
        self.spawn_save(ctx, f"3d-{now_ms()}", {"model3d": url, "prompt": prompt})
        return True


@NodeRegistry.register(NodeKind.GENERATE_AUDIO)
class GenerateAudioExecutor(GenerationExecutor):
    """Text-to-audio generation."""

    DISPLAY_NAME = "Generate Audio"
    OUTPUT_KIND = OutputKind.AUDIO
    OUTPUT_FIELD = "outputAudio"
    MEDIA_TYPE = "audio"
    FAILURE_MESSAGE = "Audio generation failed"

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {
            "inputPrompt": None,
            "outputAudio": None,
            "selectedModel": None,
            "status": NodeStatus.IDLE.value,
            "error": None,
            "audioHistory": [],
            "selectedAudioHistoryIndex": 0,
        }

    def resolve_inputs(self, inputs, data, options):
        if options.use_stored_fallback:
            text = inputs.text if inputs.text is not None else data.get("inputPrompt")
        else:
            text = inputs.text
        return [], text

    def validate(self, data, images, prompt, inputs):
        if not (prompt or inputs.dynamic_inputs.get("prompt")):
            raise NodeValidationError("Missing text input for audio generation")
        if not (data.get("selectedModel") or {}).get("modelId"):
            raise NodeValidationError("No model selected")

    def persisted_inputs(self, images, prompt):
        return {"inputPrompt": prompt}

    def apply_result(self, ctx, data, result, images, prompt):
        audio = result.get("audio") or result.get("audioUrl")
        if not audio:
            return False
        timestamp = now_ms()
        audio_id = str(timestamp)
        item = HistoryItem(
            id=audio_id,
            timestamp=timestamp,
            prompt=prompt or "",
            model=(data.get("selectedModel") or {}).get("modelId") or "",
        )
        self.record_history(
            ctx, data, "audioHistory", "selectedAudioHistoryIndex", item, {"outputAudio": audio},
        )
        self.add_cost(ctx, data)
        self.spawn_save(ctx, audio_id, {"audio": audio, "prompt": prompt}, "audioHistory")
        return True


@NodeRegistry.register(NodeKind.LLM_GENERATE)
class LLMGenerateExecutor(GenerationExecutor):
    """Text generation through the LLM endpoint."""

    DISPLAY_NAME = "LLM Generate"
    OUTPUT_KIND = OutputKind.TEXT
    OUTPUT_FIELD = "outputText"
    DEFAULT_PROVIDER = "google"
    FAILURE_MESSAGE = "LLM generation failed"
    TIMEOUT_MESSAGE = "Request timed out."

    @classmethod
    def default_data(cls) -> dict[str, Any]:
        return {
            "inputPrompt": None,
            "inputImages": [],
            "outputText": None,
            "provider": "google",
            "model": "gemini-3-flash-preview",
            "temperature": 0.7,
            "maxTokens": 8192,
            "status": NodeStatus.IDLE.value,
            "error": None,
        }

    def resolve_inputs(self, inputs, data, options):
        if options.use_stored_fallback:
            return super().resolve_inputs(inputs, data, options)
        return list(inputs.images), inputs.text

    def provider(self, data):
        return data.get("provider") or self.DEFAULT_PROVIDER

    def headers(self, ctx, data):
        return build_llm_headers(self.provider(data), ctx.provider_settings)

    def build_payload(self, data, images, prompt, inputs):
        payload: dict[str, Any] = {"prompt": prompt}
        if images:
            payload["images"] = images
        payload.update({
            "provider": self.provider(data),
            "model": data.get("model") or "gemini-3-flash-preview",
            "temperature": data.get("temperature", 0.7),
            "maxTokens": data.get("maxTokens", 8192),
        })
        return payload

    async def send(self, ctx, payload, headers):
        return await ctx.client.llm(payload, headers)

    def apply_result(self, ctx, data, result, images, prompt):
        text = result.get("text")
        if text is None:
            return False
        ctx.update({"outputText": text, "status": NodeStatus.COMPLETE.value, "error": None})
        return True
