"""
Circuit breaker for provider calls.

One breaker per connector configuration (``"<provider>:<connector_id>"``):
a project whose credentials were revoked opens only its own circuit, never
the circuit of every project on the same provider.

    CLOSED     --failure_threshold consecutive failures-->  OPEN
    OPEN       --timeout_seconds elapsed-->                 HALF_OPEN
    HALF_OPEN  --success_threshold successes-->             CLOSED
    HALF_OPEN  --any failure-->                             OPEN

Breakers live in a process-wide registry guarded by ``threading.Lock``:
Celery runs each task on its own event loop, so an asyncio lock would not
be shared between tasks.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    # probe calls let through while HALF_OPEN
    half_open_max_calls: int = 3


class CircuitBreaker:

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._probe_successes = 0
        self._probes_in_flight = 0
        self._opened_at = 0.0

    # ── registry ──

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        with _registry_lock:
            breaker = _registry.get(service_name)
            if breaker is None:
                breaker = _registry[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        with _registry_lock:
            _registry.clear()

    # ── state ──

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _seconds_until_probe(self) -> float:
        return max(0.0, self._opened_at + self.config.timeout_seconds - time.monotonic())

    def _move_to(self, new_state: CircuitState) -> None:
        """Caller holds the lock"""
        old_state, self._state = self._state, new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state == CircuitState.HALF_OPEN:
            self._probe_successes = 0
            self._probes_in_flight = 0
        else:
            self._consecutive_failures = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit '{self.service_name}' {old_state.value} -> {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "failures": self._consecutive_failures,
            },
        )

    def _admit(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN and self._seconds_until_probe() == 0.0:
                self._move_to(CircuitState.HALF_OPEN)
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and self._probes_in_flight < self.config.half_open_max_calls:
                self._probes_in_flight += 1
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._probe_successes += 1
                if self._probe_successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._consecutive_failures = 0

    def record_failure(self, error: str | None = None) -> None:
        with self._lock:
            self._consecutive_failures += 1
            logger.debug(
                f"Circuit '{self.service_name}' failure",
                extra_data={
                    "service": self.service_name,
                    "failures": self._consecutive_failures,
                    "threshold": self.config.failure_threshold,
                    "error": error,
                },
            )
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        is_failure: Callable[[T], bool] | None = None,
    ) -> T:
        """
        Await ``func()`` unless the circuit is open.

        ``is_failure`` lets callers that report errors as values (connectors
        return a failed ``SendResult``) count them. Cancellation is neither a
        success nor a failure.

        Raises:
            CircuitBreakerOpenError: the call was not attempted
        """
        if not self._admit():
            raise CircuitBreakerOpenError(self.service_name, self._seconds_until_probe())

        try:
            result = await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.record_failure(str(e))
            raise

        if is_failure is not None and is_failure(result):
            self.record_failure(getattr(result, "error", None))
        else:
            self.record_success()
        return result


_registry: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_connector_circuit_breaker(provider_type: str, connector_id: str) -> CircuitBreaker:
    from app.core.config import settings

    return CircuitBreaker.get_instance(
        f"{provider_type}:{connector_id}",
        CircuitBreakerConfig(
            failure_threshold=settings.CONNECTOR_CIRCUIT_FAILURE_THRESHOLD,
            timeout_seconds=settings.CONNECTOR_CIRCUIT_RESET_SECONDS,
        ),
    )
