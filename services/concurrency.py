"""Concurrency controls for outbound LLM calls and best-effort side effects.

- ``rate_limited_llm_call`` caps concurrent LLM requests per worker with an
  ``asyncio.Semaphore``.
- ``SideEffectRunner`` schedules secondary work (activity log writes,
  notification fan-out) as independent tasks.  The primary operation never
  awaits them; their failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

# ── Global LLM semaphore ─────────────────────────────────────

_llm_semaphore: asyncio.Semaphore | None = None


def _get_semaphore() -> asyncio.Semaphore:
    """Lazy-init to ensure semaphore is bound to the running event loop."""
    global _llm_semaphore
    if _llm_semaphore is None:
        from config.settings import get_settings

        limit = get_settings().max_concurrent_llm
        _llm_semaphore = asyncio.Semaphore(limit)
        logger.info("LLM concurrency semaphore initialized (max=%d)", limit)
    return _llm_semaphore


async def rate_limited_llm_call(
    func: Callable[..., Coroutine[Any, Any, Any]],
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Execute an async LLM function with concurrency limiting.

    Usage::

        result = await rate_limited_llm_call(litellm.acompletion, model=..., messages=...)
    """
    sem = _get_semaphore()
    async with sem:
        return await func(*args, **kwargs)


# ── Best-effort side effects ─────────────────────────────────


class SideEffectRunner:
    """Fire-and-forget task scheduler with failure capture.

    Tasks are held in a set until they finish so they are not garbage
    collected mid-flight.  ``drain()`` awaits everything still pending
    (used at shutdown and in tests).
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], label: str = "side-effect") -> asyncio.Task:
        task = asyncio.create_task(coro, name=label)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Side effect cancelled: %s", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.error(
                "Side effect failed: %s: %s", task.get_name(), exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for all pending side effects (including ones they spawn)."""
        while self._tasks:
            batch = list(self._tasks)
            done, not_done = await asyncio.wait(batch, timeout=timeout)
            self._tasks.difference_update(done)
            if not_done:
                logger.warning("%d side effects still pending after drain timeout", len(not_done))
                return
