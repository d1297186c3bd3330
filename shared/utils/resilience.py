"""
shared/utils/resilience.py
Circuit breakers and bounded retries for calls to external services.
"""

import asyncio
import logging
from typing import Any, Callable

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.utils.errors import ExternalDependencyError

logger = logging.getLogger(__name__)


class _LoggingListener(CircuitBreakerListener):
    def __init__(self, service_name: str):
        self.service_name = service_name

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker for {self.service_name}: "
            f"{old_state.name if old_state else None} -> {new_state.name}"
        )


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self):
        self.breakers = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=5,  # Open after 5 failures
                reset_timeout=60,  # Try again after 60 seconds
                listeners=[_LoggingListener(service_name)],
                name=service_name,
            )
        return self.breakers[service_name]


circuit_breaker_manager = CircuitBreakerManager()


async def call_external(
    service_name: str,
    operation: str,
    func: Callable[..., Any],
    *args: Any,
    timeout: float,
    retries: int = 0,
) -> Any:
    """
    Run a blocking SDK call off the event loop, behind the service's
    circuit breaker, with a bounded timeout.

    retries > 0 is only for calls that are safe to repeat. Every failure
    surfaces as ExternalDependencyError.
    """
    breaker = circuit_breaker_manager.get_breaker(service_name)

    async def _attempt() -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(breaker.call, func, *args), timeout=timeout
            )
        except CircuitBreakerError as e:
            raise ExternalDependencyError(f"{service_name} unavailable (circuit open)") from e
        except asyncio.TimeoutError as e:
            logger.error(f"{service_name}.{operation} timed out after {timeout}s")
            # The worker thread keeps running; the call may still succeed remotely.
            raise ExternalDependencyError(
                f"{service_name} {operation} timed out", outcome_unknown=True
            ) from e
        except ExternalDependencyError:
            raise
        except Exception as e:
            logger.error(f"{service_name}.{operation} failed: {e}")
            raise ExternalDependencyError(f"{service_name} {operation} failed: {e}") from e

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=0.2, max=2),
        retry=retry_if_exception_type(ExternalDependencyError),
        reraise=True,
    ):
        with attempt:
            return await _attempt()
