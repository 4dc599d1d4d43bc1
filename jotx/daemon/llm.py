"""Client for the local LLM runtime (Ollama)."""

from typing import Optional

import httpx
from loguru import logger

from .config import LLMConfig
from .errors import ProviderError


class OllamaClient:
    """Talks to an Ollama server already running on this machine."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def generate(self, prompt: str, config: LLMConfig) -> str:
        """Generate a completion; raises ProviderError on any failure."""
        payload = {
            "model": config.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": config.temperature,
                "num_predict": config.max_tokens,
            },
        }
        url = f"{config.api_base.rstrip('/')}/api/generate"
        try:
            response = await self._client.post(url, json=payload, timeout=config.timeout_s)
        except httpx.HTTPError as e:
            raise ProviderError(f"LLM request to {url} failed: {e}") from e

        if response.status_code != 200:
            raise ProviderError(f"LLM returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"LLM returned invalid JSON: {e}") from e

        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise ProviderError("LLM response has no 'response' field")
        logger.debug(f"LLM generated {len(text)} chars with {config.model}")
        return text

    async def is_available(self, config: LLMConfig) -> bool:
        try:
            response = await self._client.get(f"{config.api_base.rstrip('/')}/api/tags", timeout=2.0)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
