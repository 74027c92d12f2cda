"""
OpenAI-compatible client for the bounded arbitration call.

Plugs into the engine as the host's `call_bounded_llm`:

    client = BoundedLLMClient()
    response = client.call(request)   # ArbitrationResponse

Features:
- Structured output: response_format with the ArbitrationResponse json_schema
- Circuit breaker: open/closed/half-open
- LLMStats: success_rate, avg_response_time
- Error mapping: timeout -> LLMTimeout, HTTP 429 -> LLMRateLimited,
  anything else -> LLMTransportError

The client never retries on its own: the arbitration loop owns the retry
budget.
"""

import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from command_arbiter.errors import LLMCircuitOpen, LLMRateLimited, LLMTimeout, LLMTransportError
from command_arbiter.llm.prompts import SYSTEM_PROMPT, build_user_prompt
from command_arbiter.llm.schemas import ArbitrationRequest, ArbitrationResponse
from command_arbiter.logger import logger
from command_arbiter.settings import settings


@dataclass
class CircuitBreakerState:
    failures: int = 0
    last_failure_time: float = 0.0
    is_open: bool = False
    open_until: float = 0.0


@dataclass
class LLMStats:
    """Client statistics"""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_by_breaker: int = 0
    circuit_breaker_trips: int = 0
    total_response_time_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 100.0
        return (self.successful_requests / self.total_requests) * 100

    @property
    def average_response_time_ms(self) -> float:
        if self.successful_requests == 0:
            return 0.0
        return self.total_response_time_ms / self.successful_requests


class BoundedLLMClient:
    """
    Chat-completions client that returns ArbitrationResponse or raises an
    LLMError subclass.
    """

    CIRCUIT_BREAKER_THRESHOLD: int = 5
    CIRCUIT_BREAKER_TIMEOUT: int = 60

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        api_key: Optional[str] = None,
        enable_circuit_breaker: bool = True,
    ):
        """
        Args:
            model: Model name (settings.llm.model by default)
            base_url: API base URL (settings.llm.base_url by default)
            timeout_ms: Request timeout in milliseconds
            api_key: Bearer token (read from settings.llm.api_key_env by default)
            enable_circuit_breaker: Enable the circuit breaker
        """
        self.model = model or settings.llm.model
        self.base_url = base_url or settings.llm.base_url
        self.timeout_ms = timeout_ms or settings.llm.timeout_ms
        self.api_key = api_key if api_key is not None else os.environ.get(settings.llm.api_key_env)
        self.max_tokens = settings.llm.max_tokens

        self._enable_circuit_breaker = enable_circuit_breaker
        self._circuit_breaker = CircuitBreakerState()
        self._stats = LLMStats()

    def reset_circuit_breaker(self) -> None:
        self._circuit_breaker = CircuitBreakerState()
        logger.info("Circuit breaker reset")

    @property
    def stats(self) -> LLMStats:
        return self._stats

    @property
    def is_circuit_open(self) -> bool:
        return self._is_circuit_open()

    # =========================================================================
    # Call
    # =========================================================================

    def call(self, request: ArbitrationRequest) -> ArbitrationResponse:
        """
        Run one bounded arbitration call.

        Raises:
            LLMCircuitOpen: breaker is open
            LLMTimeout: request timed out
            LLMRateLimited: HTTP 429
            LLMTransportError: any other transport or parsing failure
        """
        self._stats.total_requests += 1

        if self._enable_circuit_breaker and self._is_circuit_open():
            self._stats.rejected_by_breaker += 1
            logger.warning("Circuit breaker open, skipping arbitration call")
            raise LLMCircuitOpen("circuit breaker open")

        start_time = time.time()
        try:
            content = self._post(request)
            response = ArbitrationResponse.model_validate_json(content)
        except requests.exceptions.Timeout as e:
            self._on_failure()
            raise LLMTimeout(str(e)[:100]) from e
        except requests.exceptions.HTTPError as e:
            self._on_failure()
            status = e.response.status_code if e.response is not None else None
            if status == 429:
                raise LLMRateLimited("rate limited", status_code=429) from e
            raise LLMTransportError(str(e)[:100], status_code=status) from e
        except requests.exceptions.RequestException as e:
            self._on_failure()
            raise LLMTransportError(str(e)[:100]) from e
        except (ValidationError, ValueError) as e:
            self._on_failure()
            raise LLMTransportError(f"invalid response: {str(e)[:100]}") from e

        elapsed_ms = (time.time() - start_time) * 1000
        self._stats.successful_requests += 1
        self._stats.total_response_time_ms += elapsed_ms
        self._reset_failures()
        logger.debug(
            "Arbitration call successful",
            decision=response.decision,
            confidence=response.confidence,
            elapsed_ms=round(elapsed_ms, 1),
        )
        return response

    __call__ = call

    def _post(self, request: ArbitrationRequest) -> str:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        if settings.get_nested("logging.log_llm_requests", False):
            logger.debug("Arbitration request", request=request.model_dump())

        response = requests.post(
            f"{self.base_url.rstrip('/')}/chat/completions",
            headers=headers,
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(request)},
                ],
                "temperature": 0.0,
                "max_tokens": self.max_tokens,
                "response_format": {
                    "type": "json_schema",
                    "json_schema": {
                        "name": ArbitrationResponse.__name__,
                        "schema": ArbitrationResponse.model_json_schema(),
                    },
                },
            },
            timeout=self.timeout_ms / 1000.0,
        )
        response.raise_for_status()

        data = response.json()
        choices = data.get("choices", [])
        if not choices:
            raise ValueError("empty choices")
        content = choices[0].get("message", {}).get("content", "")
        if not content:
            raise ValueError("empty content")
        return content

    # =========================================================================
    # Circuit breaker
    # =========================================================================

    def _is_circuit_open(self) -> bool:
        if not self._circuit_breaker.is_open:
            return False

        if time.time() >= self._circuit_breaker.open_until:
            logger.info("Circuit breaker attempting recovery (half-open state)")
            self._circuit_breaker.is_open = False
            return False

        return True

    def _on_failure(self) -> None:
        self._stats.failed_requests += 1
        if self._enable_circuit_breaker:
            self._record_failure()

    def _record_failure(self) -> None:
        self._circuit_breaker.failures += 1
        self._circuit_breaker.last_failure_time = time.time()

        if self._circuit_breaker.failures >= self.CIRCUIT_BREAKER_THRESHOLD:
            self._circuit_breaker.is_open = True
            self._circuit_breaker.open_until = time.time() + self.CIRCUIT_BREAKER_TIMEOUT
            self._stats.circuit_breaker_trips += 1

            logger.error(
                "Circuit breaker opened",
                failures=self._circuit_breaker.failures,
                timeout=self.CIRCUIT_BREAKER_TIMEOUT,
            )

    def _reset_failures(self) -> None:
        self._circuit_breaker.failures = 0
        if self._circuit_breaker.is_open:
            logger.info("Circuit breaker closed after successful request")
            self._circuit_breaker.is_open = False

    # =========================================================================
    # Stats & health
    # =========================================================================

    def get_stats_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self._stats.total_requests,
            "successful_requests": self._stats.successful_requests,
            "failed_requests": self._stats.failed_requests,
            "rejected_by_breaker": self._stats.rejected_by_breaker,
            "circuit_breaker_trips": self._stats.circuit_breaker_trips,
            "success_rate": round(self._stats.success_rate, 1),
            "average_response_time_ms": round(self._stats.average_response_time_ms, 1),
            "circuit_breaker_open": self._circuit_breaker.is_open,
        }

    def health_check(self) -> bool:
        try:
            response = requests.get(f"{self.base_url.rstrip('/')}/models", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False
