"""
Circuit Breaker Module

Per-operation circuit breakers keyed by ``"{service}:{operation}"``. A circuit
opens after a run of consecutive failures, rejects calls during a cooldown,
then admits a single trial call whose outcome either closes it again or
re-opens it for another cooldown.

State lives for the lifetime of the process only.
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Callable, Dict, Optional

from comparator.common.config import CircuitBreakerConfig, get_config

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerState:
    """
    Health record of one operation key.

    Attributes:
        failure_count: Consecutive failures since the last success
        success_count: Successes over the lifetime of the record
        last_failure_time: When the last failure was recorded
        state: Current circuit state
        next_attempt_time: Earliest time an open circuit admits a trial call
        trial_in_flight: A half-open trial call has been admitted and not resolved
    """
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    state: CircuitState = CircuitState.CLOSED
    next_attempt_time: float = 0.0
    trial_in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


def circuit_key(service: str, operation: str) -> str:
    """Build the registry key of an operation."""
    return f"{service}:{operation}"


class CircuitBreakerRegistry:
    """
    Process-wide table of circuit breaker states.

    Transitions:
    - closed -> open after ``failure_threshold`` consecutive failures
    - open -> half-open on the first status check at or after
      ``next_attempt_time``; that check admits the trial call
    - half-open -> closed when the trial succeeds
    - half-open -> open when the trial fails, with a fresh cooldown
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the registry.

        Args:
            config: Threshold and cooldown settings
            clock: Time source
        """
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._states: Dict[str, CircuitBreakerState] = {}
        self._lock = threading.RLock()

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def is_open(self, key: str) -> bool:
        """
        Status check made before calling the operation behind ``key``.

        Returns True when the call must be rejected without being attempted.
        A False result from an open or half-open circuit admits the single
        trial call.
        """
        with self._lock:
            state = self._states.get(key)
            if state is None or state.state == CircuitState.CLOSED:
                return False

            if state.state == CircuitState.OPEN:
                if self._clock() >= state.next_attempt_time:
                    state.state = CircuitState.HALF_OPEN
                    state.trial_in_flight = True
                    logger.warning(f"Circuit '{key}' HALF-OPEN. Allowing a trial call.")
                    return False
                return True

            # Half-open: only one trial at a time
            if state.trial_in_flight:
                return True
            state.trial_in_flight = True
            return False

    def allow_request(self, key: str) -> bool:
        """Inverse of ``is_open``."""
        return not self.is_open(key)

    def release_trial(self, key: str) -> None:
        """
        Give back an admitted half-open trial that ended without an outcome.

        The circuit stays half-open and the next status check admits a new
        trial.
        """
        with self._lock:
            state = self._states.get(key)
            if state is not None and state.state == CircuitState.HALF_OPEN:
                state.trial_in_flight = False

    def record_success(self, key: str) -> None:
        """Record a successful call."""
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return
            state.success_count += 1
            if state.state == CircuitState.HALF_OPEN:
                state.state = CircuitState.CLOSED
                state.failure_count = 0
                state.trial_in_flight = False
                logger.info(f"Circuit '{key}' CLOSED. Calls are allowed again.")
            elif state.state == CircuitState.CLOSED:
                state.failure_count = 0

    def record_failure(self, key: str) -> None:
        """Record a failed call."""
        with self._lock:
            state = self._states.setdefault(key, CircuitBreakerState())
            now = self._clock()
            state.failure_count += 1
            state.last_failure_time = now

            if state.state == CircuitState.HALF_OPEN:
                self._open(key, state, now)
            elif (state.state == CircuitState.CLOSED
                  and state.failure_count >= self._config.failure_threshold):
                self._open(key, state, now)

    def get_state(self, key: str) -> CircuitState:
        """Current state of ``key`` without triggering transitions."""
        with self._lock:
            state = self._states.get(key)
            return state.state if state is not None else CircuitState.CLOSED

    def get_record(self, key: str) -> Optional[CircuitBreakerState]:
        """Copy of the full record of ``key``, None if never seen."""
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return None
            return CircuitBreakerState(**asdict(state))

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every tracked key."""
        with self._lock:
            return {key: state.to_dict() for key, state in self._states.items()}

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when ``key`` is None."""
        with self._lock:
            if key is None:
                self._states.clear()
            else:
                self._states.pop(key, None)

    def _open(self, key: str, state: CircuitBreakerState, now: float) -> None:
        state.state = CircuitState.OPEN
        state.trial_in_flight = False
        state.next_attempt_time = now + self._config.reset_timeout
        logger.error(
            f"Circuit '{key}' OPENED after {state.failure_count} failures. "
            f"Rejecting calls for {self._config.reset_timeout:.0f}s."
        )


# Process-wide registry shared by every ErrorHandler that is not given its own
_default_registry: Optional[CircuitBreakerRegistry] = None


def get_circuit_breaker_registry() -> CircuitBreakerRegistry:
    """Return the process-wide registry, creating it from config on first use."""
    global _default_registry
    if _default_registry is None:
        _default_registry = CircuitBreakerRegistry(get_config().circuit_breaker)
    return _default_registry


def set_circuit_breaker_registry(registry: Optional[CircuitBreakerRegistry]) -> None:
    """Replace the process-wide registry; None drops it so the next call rebuilds it."""
    global _default_registry
    _default_registry = registry
