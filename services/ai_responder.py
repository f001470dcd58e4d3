"""AI response generator: drafts a first answer to a doubt via LiteLLM.

Generation is optional and bounded: any timeout, provider error or empty
completion yields ``None`` and the caller carries on without an AI answer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import litellm

from config.llm_config import LLMConfig
from config.prompts.doubt_answer import DOUBT_ANSWER_SYSTEM_PROMPT, build_doubt_answer_prompt
from models.doubt import Doubt
from services.concurrency import rate_limited_llm_call

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AIAnswer:
    content: str
    model: str
    # Fixed heuristic: the provider returns no native confidence signal.
    confidence: float


class AIResponseGenerator:
    def __init__(self, llm_config: LLMConfig, timeout: float = 30.0, confidence: float = 0.85) -> None:
        if not llm_config.model:
            raise ValueError("AIResponseGenerator requires a model id")
        self._config = llm_config
        self._timeout = timeout
        self._confidence = confidence

    @property
    def model(self) -> str:
        return self._config.model or ""

    def build_messages(self, doubt: Doubt) -> list[dict[str, str]]:
        prompt = build_doubt_answer_prompt(
            title=doubt.title,
            subject=doubt.subject,
            description=doubt.description,
            difficulty_level=doubt.difficulty_level,
        )
        return [
            {"role": "system", "content": DOUBT_ANSWER_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

    async def generate(self, doubt: Doubt, overrides: LLMConfig | None = None) -> AIAnswer | None:
        config = self._config.merge(overrides) if overrides else self._config
        try:
            resp = await asyncio.wait_for(
                rate_limited_llm_call(
                    litellm.acompletion,
                    model=config.model,
                    messages=self.build_messages(doubt),
                    **config.to_litellm_kwargs(),
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("AI answer for doubt %s timed out after %.1fs", doubt.id, self._timeout)
            return None
        except Exception as exc:
            logger.error("AI answer for doubt %s failed: %s", doubt.id, exc)
            return None

        try:
            content = resp.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            logger.warning("AI answer for doubt %s had an unexpected shape", doubt.id)
            return None
        if not content or not content.strip():
            logger.warning("AI answer for doubt %s was empty", doubt.id)
            return None

        return AIAnswer(
            content=content.strip()[:10000],
            model=config.model or "",
            confidence=self._confidence,
        )
