"""HTTP client for the external generation and storage service."""
import logging
from typing import Any

import httpx

from ..engine.errors import GenerationError

logger = logging.getLogger(__name__)

PROVIDER_HEADERS: dict[str, str] = {
    "gemini": "X-Gemini-API-Key",
    "openai": "X-OpenAI-API-Key",
    "replicate": "X-Replicate-API-Key",
    "fal": "X-Fal-API-Key",
    "kie": "X-Kie-Key",
    "wavespeed": "X-WaveSpeed-Key",
}

# LLM providers are named differently from the credential slots they use
LLM_CREDENTIALS: dict[str, str] = {"google": "gemini", "openai": "openai"}


def _api_key(provider_settings: dict[str, Any], provider: str) -> str | None:
    providers = provider_settings.get("providers", provider_settings)
    config = providers.get(provider) or {}
    return config.get("apiKey")


def build_headers(provider: str, provider_settings: dict[str, Any]) -> dict[str, str]:
    """JSON headers plus the one credential header for `provider`, if configured."""
    headers = {"Content-Type": "application/json"}
    header_name = PROVIDER_HEADERS.get(provider)
    key = _api_key(provider_settings, provider)
    if header_name and key:
        headers[header_name] = key
    return headers


def build_llm_headers(provider: str, provider_settings: dict[str, Any]) -> dict[str, str]:
    credential = LLM_CREDENTIALS.get(provider)
    if credential is None:
        return {"Content-Type": "application/json"}
    return build_headers(credential, provider_settings)


def error_message(resp: httpx.Response) -> str:
    """Best message for a non-2xx response: JSON `error`, else truncated body."""
    message = f"HTTP {resp.status_code}"
    text = resp.text
    try:
        body = resp.json()
    except ValueError:
        return f"{message} - {text[:200]}" if text else message
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return message


class GenerationClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "GenerationClient":
        return cls(settings.generation_base_url, timeout=settings.request_timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
        resp = await self._client.post(path, json=payload, headers=headers)
        if resp.is_error:
            message = error_message(resp)
            logger.warning("POST %s failed: %s", path, message)
            raise GenerationError(message)
        try:
            body = resp.json()
        except ValueError as exc:
            raise GenerationError("Malformed response from generation service") from exc
        if not isinstance(body, dict):
            raise GenerationError("Malformed response from generation service")
        return body

    async def generate(self, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        return await self._post("/api/generate", payload, headers)

    async def llm(self, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        return await self._post("/api/llm", payload, headers)

    async def save_generation(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._post("/api/save-generation", payload)

    async def load_generation(self, directory_path: str, image_id: str) -> dict[str, Any]:
        return await self._post(
            "/api/load-generation", {"directoryPath": directory_path, "imageId": image_id},
        )
