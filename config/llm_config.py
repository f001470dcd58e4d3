"""Generation parameters for AI doubt answers.

Settings supply the process-wide defaults; a caller may layer a partial
``LLMConfig`` on top for a single request (e.g. a shorter budget for
quick clarification doubts).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

_SAMPLING_FIELDS = ("max_tokens", "temperature", "top_p", "stop")


class LLMConfig(BaseModel):
    """LiteLLM call parameters. ``None`` leaves the provider default in place."""

    model: str | None = Field(default=None, description="LiteLLM model identifier")
    max_tokens: int | None = Field(default=None, gt=0, description="Answer token budget")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    stop: list[str] | None = Field(default=None, description="Stop sequences")

    def merge(self, overrides: LLMConfig) -> LLMConfig:
        """Layer *overrides* on top of this config; unset override fields are ignored."""
        return self.model_copy(update=overrides.model_dump(exclude_none=True))

    def to_litellm_kwargs(self) -> dict[str, Any]:
        """Sampling kwargs for ``litellm.acompletion``. The model id is passed separately."""
        values = self.model_dump(include=set(_SAMPLING_FIELDS), exclude_none=True)
        return {name: values[name] for name in _SAMPLING_FIELDS if name in values}
