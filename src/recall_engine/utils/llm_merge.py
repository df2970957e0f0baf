"""LLM-powered merge synthesis for consolidation.

The consolidation engine only depends on the ``LLMMerger`` contract:
``merge(content_a, content_b) -> str``. A merger raises ``MergeError`` on
failure; the engine records the error against the pair and moves on.

``AnthropicMerger`` calls the Anthropic Messages API over httpx.

Configuration via RECALL_LLM_* env vars:
- RECALL_LLM_API_KEY: Anthropic API key (optional behind a proxy)
- RECALL_LLM_BASE_URL: API URL (default: https://api.anthropic.com)
- RECALL_LLM_MODEL: model id (default: claude-3-5-haiku-latest)
"""

import logging
from typing import Protocol, runtime_checkable

import httpx

from ..config import LLMMergeSettings, settings

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

MERGE_PROMPT = (
    "Merge these two notes from a developer knowledge base into a single note. "
    "Keep every distinct fact, decision and constraint, drop repetition, and "
    "reply with the merged note only.\n\n"
    "Note A:\n{a}\n\nNote B:\n{b}"
)


class MergeError(RuntimeError):
    """The merge provider could not produce merged content."""


@runtime_checkable
class LLMMerger(Protocol):
    """Merge provider contract used by consolidation."""

    async def merge(self, content_a: str, content_b: str) -> str: ...


class AnthropicMerger:
    """Merge provider backed by the Anthropic Messages API.

    Args:
        config: Endpoint settings; defaults to ``settings.llm``.
        client: Optional shared ``httpx.AsyncClient`` (tests inject one with a
            mock transport). When omitted a client is created per call.
    """

    def __init__(self, config: LLMMergeSettings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.config = config or settings.llm
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        # A proxy might not need a key
        if self.config.api_key:
            headers["x-api-key"] = self.config.api_key.get_secret_value()
        return headers

    def _payload(self, content_a: str, content_b: str) -> dict:
        return {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "messages": [{"role": "user", "content": MERGE_PROMPT.format(a=content_a, b=content_b)}],
            "temperature": 0.2,
        }

    async def _post(self, client: httpx.AsyncClient, content_a: str, content_b: str) -> httpx.Response:
        url = f"{self.config.base_url}/v1/messages"
        return await client.post(url, json=self._payload(content_a, content_b), headers=self._headers())

    async def merge(self, content_a: str, content_b: str) -> str:
        """Merged content for two memories.

        Raises:
            MergeError: On timeout, HTTP error or a response without text.
        """
        try:
            if self._client is not None:
                response = await self._post(self._client, content_a, content_b)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    response = await self._post(client, content_a, content_b)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise MergeError(f"Anthropic merge timeout after {self.config.timeout_seconds}s") from e
        except httpx.HTTPStatusError as e:
            raise MergeError(f"Anthropic merge HTTP error {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise MergeError(f"Anthropic merge error: {type(e).__name__}") from e

        text_block = next((block for block in data.get("content", []) if block.get("type") == "text"), None)
        if not text_block:
            raise MergeError("Anthropic merge: no text block in response")

        merged = text_block.get("text", "").strip()
        if not merged:
            raise MergeError("Anthropic merge: empty text in response")

        logger.debug(f"Anthropic merge generated ({self.config.model}, {len(merged)} chars)")
        return merged
