"""
Completion model client.

The pipeline depends only on `complete(system_prompt, user_prompt)` returning
text. AnthropicCompletion is the production implementation:
  - Uses anthropic.AsyncAnthropic
  - Every call bounded by asyncio.wait_for
  - Logs model, prompt version, latency and cost estimate at INFO level
  - A response cut off by the token limit raises CompletionTruncatedError;
    callers must never treat a truncated answer as complete
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Protocol

import anthropic

logger = logging.getLogger(__name__)

# Pricing per 1M tokens (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-haiku-4-5-20251001": (0.80, 4.00),
    "claude-sonnet-4-6": (3.00, 15.00),
}
_DEFAULT_PRICING = (3.00, 15.00)


class CompletionTruncatedError(Exception):
    """Raised when the model stopped because it hit max_tokens."""


class CompletionClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        context: str = "",
        prompt_version: Optional[str] = None,
    ) -> str:
        ...


# ---------------------------------------------------------------------------
# Cost logging helper
# ---------------------------------------------------------------------------

def _log_llm_call(
    model: str,
    prompt_version: str,
    latency_s: float,
    input_tokens: int,
    output_tokens: int,
    context: str = "",
) -> float:
    input_cpm, output_cpm = MODEL_PRICING.get(model, _DEFAULT_PRICING)
    cost_usd = (
        (input_tokens / 1_000_000) * input_cpm
        + (output_tokens / 1_000_000) * output_cpm
    )
    logger.info(
        "llm_call model=%s prompt_version=%s latency_s=%.3f "
        "input_tokens=%d output_tokens=%d cost_usd=%.6f context=%s",
        model,
        prompt_version,
        latency_s,
        input_tokens,
        output_tokens,
        cost_usd,
        context,
    )
    return cost_usd


class AnthropicCompletion:
    """Text completion over the Anthropic Messages API."""

    def __init__(
        self,
        model: str,
        max_tokens: int,
        timeout_s: float,
        prompt_version: str = "",
        temperature: float = 0.1,
        client: Optional[anthropic.AsyncAnthropic] = None,
        api_key: str = "",
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.timeout_s = timeout_s
        self.prompt_version = prompt_version
        self.temperature = temperature
        if client is None:
            client = anthropic.AsyncAnthropic(api_key=api_key) if api_key else anthropic.AsyncAnthropic()
        self._client = client

        self.calls = 0
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.estimated_cost_usd = 0.0

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        context: str = "",
        prompt_version: Optional[str] = None,
    ) -> str:
        """
        Send one system/user exchange and return the concatenated text blocks.

        Raises asyncio.TimeoutError, anthropic.APIError, or
        CompletionTruncatedError. The caller maps those onto its own error type.
        """
        budget = max_tokens or self.max_tokens
        t0 = time.monotonic()
        response = await asyncio.wait_for(
            self._client.messages.create(
                model=self.model,
                max_tokens=budget,
                temperature=self.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            ),
            timeout=self.timeout_s,
        )
        latency = time.monotonic() - t0

        input_tok = response.usage.input_tokens
        output_tok = response.usage.output_tokens
        self.calls += 1
        self.total_input_tokens += input_tok
        self.total_output_tokens += output_tok
        self.estimated_cost_usd += _log_llm_call(
            model=self.model,
            prompt_version=prompt_version or self.prompt_version,
            latency_s=latency,
            input_tokens=input_tok,
            output_tokens=output_tok,
            context=context,
        )

        if response.stop_reason == "max_tokens":
            raise CompletionTruncatedError(
                f"response truncated at max_tokens={budget} ({output_tok} output tokens)"
            )

        text = ""
        for block in response.content:
            if block.type == "text":
                text += block.text
        return text
