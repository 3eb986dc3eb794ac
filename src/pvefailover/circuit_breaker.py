"""
Circuit breaker pattern for isolating failing hosts.
"""
import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, skip host
    HALF_OPEN = "half-open"  # Timeout elapsed, host may be tried again


class CircuitBreaker:
    def __init__(self, failure_threshold: int = 3, recovery_timeout: float = 60.0,
                 clock: Callable[[], float] = time.time):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._failures = 0
        self._state = CircuitState.CLOSED
        self._last_failure_time = 0.0

    @property
    def state(self) -> CircuitState:
        # OPEN -> HALF_OPEN is decided when the state is read, there is no timer
        if self._state == CircuitState.OPEN:
            if self._clock() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def last_failure_time(self) -> float:
        return self._last_failure_time

    def allow_request(self) -> bool:
        """Check if a request should be allowed."""
        return self.state != CircuitState.OPEN

    def record_success(self):
        """A success always closes the breaker and forgets past failures."""
        self._failures = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> bool:
        """Record a failed request. Returns True when this failure tripped the breaker."""
        state = self.state
        self._failures += 1
        self._last_failure_time = self._clock()

        if state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            return True
        if state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._state = CircuitState.OPEN
            return True
        return False

    def snapshot(self) -> dict:
        return {
            "failures": self._failures,
            "last_failure": self._last_failure_time,
            "state": self.state.value,
        }


class CircuitBreakerRegistry:
    """Registry to manage circuit breakers for multiple hosts."""
    def __init__(self, failure_threshold: int = 3, recovery_timeout: float = 60.0,
                 clock: Callable[[], float] = time.time):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, host: str) -> CircuitBreaker:
        if host not in self._breakers:
            self._breakers[host] = CircuitBreaker(
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                clock=self._clock,
            )
        return self._breakers[host]

    def find(self, host: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(host)

    def state_of(self, host: str) -> CircuitState:
        """State for `host`; hosts without a breaker record count as closed."""
        breaker = self._breakers.get(host)
        if breaker is None:
            return CircuitState.CLOSED
        return breaker.state

    def record_failure(self, host: str) -> None:
        breaker = self.get_breaker(host)
        if breaker.record_failure():
            logger.warning("Circuit breaker OPENED for %s (%d failures)", host, breaker.failure_count)

    def reset(self, host: str) -> None:
        breaker = self._breakers.get(host)
        if breaker is not None:
            breaker.record_success()

    def remove(self, host: str) -> None:
        self._breakers.pop(host, None)

    def snapshot(self) -> Dict[str, dict]:
        return {host: breaker.snapshot() for host, breaker in self._breakers.items()}
