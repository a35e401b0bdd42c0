from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from roundtable.backends.base import ActorBackend, BackendExecutionError, BackendTimeoutError

BackendEventHook = Callable[[dict[str, Any]], None]

RETRYABLE_ERROR_PATTERN = re.compile(
    r"timeout|timed out|network|econnrefused|econnreset|rate limit|\b429\b|\b503\b|\b504\b",
    re.IGNORECASE,
)

logger = logging.getLogger(__name__)


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, BackendExecutionError):
        return exc.retriable
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    return bool(RETRYABLE_ERROR_PATTERN.search(str(exc)))


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 10.0
    timeout_seconds: float = 120.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff_seconds)


class ResilientBackend(ActorBackend):
    """Wraps an actor backend with timeout, exponential-backoff retry and optional failover."""

    name = "resilient"

    def __init__(
        self,
        primary_backend: ActorBackend,
        retry_policy: RetryPolicy,
        *,
        fallback_backend: ActorBackend | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_backend = primary_backend
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect_chunks(
        self,
        backend: ActorBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.execute(system_prompt, user_prompt, context):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Actor call timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=backend.name,
                retriable=True,
            ) from exc

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        attempts: list[ActorBackend] = [self.primary_backend]
        if self.fallback_backend is not None and self.fallback_backend is not self.primary_backend:
            attempts.append(self.fallback_backend)

        errors: list[str] = []
        for backend in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.delay_for(attempt)
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend.name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    logger.info(
                        "Retrying %s call (attempt %d) in %.1fs", backend.name, attempt, delay
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._collect_chunks(
                        backend,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        context=context,
                    )
                    if backend is not self.primary_backend:
                        self._emit(
                            {
                                "event": "backend_fallback_success",
                                "backend": backend.name,
                                "attempt": attempt,
                            }
                        )
                    return chunks
                except Exception as exc:
                    retriable = is_retryable_error(exc)
                    errors.append(f"{backend.name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend.name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": retriable,
                        }
                    )
                    logger.warning("Actor call via %s failed: %s", backend.name, exc)
                    if not retriable:
                        break

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All actor call attempts failed. {summary}",
            backend=self.primary_backend.name,
            retriable=False,
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        for chunk in await self.call(system_prompt, user_prompt, context):
            yield chunk
