"""
Text-completion service used by Jey, behind a circuit breaker.

If completion latency exceeds JEY_LATENCY_MS or a call fails, the circuit opens and calls
fail fast with AssistantServiceUnavailable until CIRCUIT_COOLDOWN_SECONDS have passed; then
CIRCUIT_HALF_OPEN_PROBES successful probes close it again.
"""

import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional

from openai import AsyncOpenAI, OpenAIError

from elitereply.config import (
    CIRCUIT_COOLDOWN_SECONDS,
    CIRCUIT_HALF_OPEN_PROBES,
    JEY_LATENCY_MS,
    JEY_MAX_TOKENS,
    JEY_MODEL,
    JEY_TEMPERATURE,
    JEY_TIMEOUT_SECONDS,
    OPENAI_API_KEY,
)
from elitereply.errors import AssistantServiceUnavailable

logger = logging.getLogger(__name__)

PLACEHOLDER_API_KEYS = frozenset({"sk-YOUR_ACTUAL_API_KEY_HERE", "changeme"})


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """In-process circuit breaker (one per completion service)."""

    def __init__(
        self,
        latency_ms: int = JEY_LATENCY_MS,
        cooldown_seconds: float = CIRCUIT_COOLDOWN_SECONDS,
        half_open_probes: int = CIRCUIT_HALF_OPEN_PROBES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.latency_ms = latency_ms
        self.cooldown_seconds = cooldown_seconds
        self.half_open_probes = half_open_probes
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.opened_at = 0.0
        self.probes = 0

    def allow(self) -> bool:
        """Whether a call may go through. Open -> half-open once the cooldown has elapsed."""
        if self.state == CircuitState.OPEN:
            if self._clock() - self.opened_at < self.cooldown_seconds:
                return False
            self.state = CircuitState.HALF_OPEN
            self.probes = 0
        return True

    def _trip(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        self.probes = 0

    def record_success(self, latency_ms: float) -> None:
        if latency_ms > self.latency_ms:
            self._trip()
            logger.warning("Circuit open: completion latency %.0f ms > %d ms.", latency_ms, self.latency_ms)
            return
        if self.state == CircuitState.HALF_OPEN:
            self.probes += 1
            if self.probes >= self.half_open_probes:
                self.state = CircuitState.CLOSED
                self.probes = 0
                logger.info("Circuit closed after %d successful probes.", self.half_open_probes)

    def record_failure(self, error: Exception) -> None:
        was = self.state
        self._trip()
        logger.warning("Circuit open (%s): completion error %s", was.value, error)

    def snapshot(self) -> dict:
        """Current state for /health."""
        return {"state": self.state.value, "opened_at": self.opened_at, "half_open_probes": self.probes}


class CompletionService(ABC):
    """Opaque text-completion service: system prompt + role-tagged history -> text."""

    @abstractmethod
    async def complete(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        """Return the generated text or raise AssistantServiceUnavailable."""

    def health(self) -> dict:
        return {"configured": True}


def is_configured(api_key: Optional[str]) -> bool:
    return bool(api_key) and api_key.strip() not in PLACEHOLDER_API_KEYS


class OpenAICompletionService(CompletionService):
    """Chat completions through the openai SDK."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = JEY_MODEL,
        max_tokens: int = JEY_MAX_TOKENS,
        temperature: float = JEY_TEMPERATURE,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = OPENAI_API_KEY if api_key is None else api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.breaker = breaker or CircuitBreaker()
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or is_configured(self.api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=JEY_TIMEOUT_SECONDS)
        return self._client

    async def complete(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        if not self.configured:
            raise AssistantServiceUnavailable("Completion service is not configured (missing API key)")
        if not self.breaker.allow():
            raise AssistantServiceUnavailable("Completion service circuit is open")

        messages = [{"role": "system", "content": system_prompt}, *history]
        start = time.perf_counter()
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except OpenAIError as e:
            self.breaker.record_failure(e)
            raise AssistantServiceUnavailable(f"Completion request failed: {e}") from e
        latency_ms = (time.perf_counter() - start) * 1000
        self.breaker.record_success(latency_ms)

        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not content:
            raise AssistantServiceUnavailable("Completion service returned an empty response")
        logger.debug("Completion in %.0f ms (%d chars).", latency_ms, len(content))
        return content

    def health(self) -> dict:
        return {"configured": self.configured, "model": self.model, "circuit": self.breaker.snapshot()}
