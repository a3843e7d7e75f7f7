"""
Generation Oracle
------------------
Tiered text generation over OpenAI or Anthropic chat models:

  preprocessing  fast model for query rewrite, HyDE and re-rank scoring
  synthesis      stronger model for the final answer

A failed preprocessing call is retried once on the synthesis tier before
the error reaches the caller. SDK clients are imported lazily so the
engine can run with injected fakes and no API keys.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

from langsmith import traceable
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from docqa.config import GenerationConfig
from docqa.interfaces import Tier


# ---------------------------------------------------------------------------
# Model pricing table  (input_$/M, output_$/M)
# ---------------------------------------------------------------------------

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini":               (0.150,  0.600),
    "gpt-4o":                    (2.500, 10.000),
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
}


# SDK error class names worth retrying (both SDKs use the same names)
_TRANSIENT_ERRORS = {"APIConnectionError", "APITimeoutError", "RateLimitError", "InternalServerError"}


def _is_transient(exc: BaseException) -> bool:
    return exc.__class__.__name__ in _TRANSIENT_ERRORS


def cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    rates = _MODEL_PRICING.get(model, (0.150, 0.600))
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000


class LLMOracle:
    """
    GenerationOracle backed by a chat-completion SDK.

    Args:
        provider:             "openai" or "anthropic".
        preprocessing_model:  Model for the preprocessing tier.
        synthesis_model:      Model for the synthesis tier.
        client:               Optional pre-built async SDK client (tests, proxies).
    """

    def __init__(
        self,
        provider: str = "openai",
        preprocessing_model: str = "gpt-4o-mini",
        synthesis_model: str = "gpt-4o",
        temperature: float = 0.3,
        max_tokens: int = 1024,
        client: Any = None,
    ) -> None:
        if provider not in ("openai", "anthropic"):
            raise ValueError(f"Unknown provider {provider!r}")
        self.provider = provider
        self.models: dict[str, str] = {
            "preprocessing": preprocessing_model,
            "synthesis": synthesis_model,
        }
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client
        self.usage: dict[str, dict[str, int]] = {
            tier: {"calls": 0, "prompt_tokens": 0, "completion_tokens": 0}
            for tier in self.models
        }

    @classmethod
    def from_config(cls, cfg: GenerationConfig) -> "LLMOracle":
        return cls(
            provider=cfg.provider,
            preprocessing_model=cfg.preprocessing_model,
            synthesis_model=cfg.synthesis_model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            if self.provider == "openai":
                from openai import AsyncOpenAI  # lazy import keeps import graph clean
                self._client = AsyncOpenAI()
            else:
                from anthropic import AsyncAnthropic  # lazy import
                self._client = AsyncAnthropic()
        return self._client

    @traceable(name="oracle_generate", run_type="llm")
    async def generate(
        self,
        prompt: str,
        timeout: Optional[float] = None,
        tier: Tier = "preprocessing",
    ) -> str:
        if tier not in self.models:
            raise ValueError(f"Unknown tier {tier!r}")
        try:
            return await self._complete(tier, prompt, timeout)
        except Exception as exc:
            if tier != "preprocessing":
                raise
            logger.warning(f"[Oracle] Preprocessing tier failed ({exc}), retrying on synthesis tier")
            return await self._complete("synthesis", prompt, timeout)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def _complete(self, tier: str, prompt: str, timeout: Optional[float]) -> str:
        model = self.models[tier]
        call = self._openai(model, prompt, timeout) if self.provider == "openai" else self._anthropic(model, prompt, timeout)
        text, prompt_tokens, completion_tokens = await (asyncio.wait_for(call, timeout) if timeout else call)

        usage = self.usage[tier]
        usage["calls"] += 1
        usage["prompt_tokens"] += prompt_tokens
        usage["completion_tokens"] += completion_tokens
        logger.debug(
            f"[Oracle] {tier}:{model} | prompt={prompt_tokens} completion={completion_tokens} | "
            f"cost=${cost_usd(model, prompt_tokens, completion_tokens):.5f}"
        )
        return text

    async def _openai(self, model: str, prompt: str, timeout: Optional[float]) -> tuple[str, int, int]:
        response = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            timeout=timeout,
        )
        usage = response.usage
        return (
            response.choices[0].message.content or "",
            getattr(usage, "prompt_tokens", 0) if usage else 0,
            getattr(usage, "completion_tokens", 0) if usage else 0,
        )

    async def _anthropic(self, model: str, prompt: str, timeout: Optional[float]) -> tuple[str, int, int]:
        # Anthropic usage: input_tokens / output_tokens
        response = await self.client.messages.create(
            model=model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
        )
        text = response.content[0].text if response.content else ""
        return text, response.usage.input_tokens, response.usage.output_tokens

    def usage_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {"provider": self.provider}
        for tier, usage in self.usage.items():
            model = self.models[tier]
            summary[tier] = {
                "model": model,
                **usage,
                "estimated_cost_usd": round(
                    cost_usd(model, usage["prompt_tokens"], usage["completion_tokens"]), 6
                ),
            }
        return summary
