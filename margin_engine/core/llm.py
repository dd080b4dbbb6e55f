"""Text-completion boundary for generation and judging.

The pipeline only depends on TextCompletionService: prompt in, text out.
AnthropicCompletionService is the production implementation; tests pass a
scripted fake.
"""

import json
import re
import time
from typing import Any, Protocol

from margin_engine.core.cancellation import CancelToken
from margin_engine.core.config import get_settings
from margin_engine.core.logging import get_logger

logger = get_logger(__name__)


class NoJsonBlock(Exception):
    """Model output contained no {...} or [...] span."""


class TextCompletionService(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> str: ...


class AnthropicCompletionService:
    """Single-message Anthropic completion with timeout and cancellation."""

    def __init__(
        self,
        model: str,
        max_tokens: int = 512,
        temperature: float = 0.3,
        chain: str = "margin",
        client: Any | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.chain = chain
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from anthropic import AsyncAnthropic

            settings = get_settings()
            self._client = AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
        return self._client

    async def _create(self, prompt: str, timeout: float | None) -> str:
        client = self._get_client()
        start = time.time()
        response = await client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
        )
        duration_ms = int((time.time() - start) * 1000)

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                f"{self.chain} call: model={self.model} in={usage.input_tokens} "
                f"out={usage.output_tokens} duration_ms={duration_ms}"
            )

        if not response.content:
            return ""
        block = response.content[0]
        return (getattr(block, "text", "") or "").strip()

    async def complete(
        self,
        prompt: str,
        *,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> str:
        token = cancel_token or CancelToken()
        return await token.run(self._create(prompt, timeout), timeout=timeout, stage=self.chain)


def strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output."""
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def extract_json_block(raw_output: str) -> str | None:
    """Return the outermost {...} or [...] span in the text, or None.

    Whichever bracket opens first wins, so a top-level array of objects is
    kept whole.
    """
    cleaned = strip_llm_fences(raw_output)
    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    closer = "}" if cleaned[start] == "{" else "]"
    end = cleaned.rfind(closer)
    if end <= start:
        return None
    return cleaned[start : end + 1]


def parse_embedded_json(raw_output: str) -> Any:
    """Parse the embedded JSON block.

    Raises:
        NoJsonBlock: If the text has no JSON block
        json.JSONDecodeError: If the block does not parse
    """
    block = extract_json_block(raw_output)
    if block is None:
        raise NoJsonBlock("no JSON block in model output")
    return json.loads(block)
