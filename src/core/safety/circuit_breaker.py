from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Dict, List, Optional


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitTransition:
    key: str
    previous: CircuitState
    current: CircuitState
    at: datetime
    reason: str


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    opened_at: Optional[datetime] = None
    failures: List[datetime] = field(default_factory=list)
    probe_in_flight: bool = False


class CircuitBreaker:
    """
    Keyed breaker guarding calls to an external dependency.
    One successful half-open probe closes the circuit.
    """

    def __init__(self, threshold: int = 5, window_seconds: int = 30, cooldown_seconds: int = 30):
        self.threshold = max(1, int(threshold))
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._circuits: Dict[str, _Circuit] = {}
        self._transitions: List[CircuitTransition] = []
        self._lock = Lock()

    def allow(self, key: str, now: datetime) -> bool:
        with self._lock:
            circuit = self._circuits.setdefault(key, _Circuit())
            if circuit.state == CircuitState.CLOSED:
                return True
            if circuit.state == CircuitState.OPEN:
                if circuit.opened_at and (now - circuit.opened_at).total_seconds() >= self.cooldown_seconds:
                    self._transition(key, circuit, CircuitState.HALF_OPEN, now, "cooldown_elapsed")
                    circuit.probe_in_flight = False
                else:
                    return False
            if circuit.probe_in_flight:
                return False
            circuit.probe_in_flight = True
            return True

    def record_success(self, key: str, now: datetime) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(key, _Circuit())
            circuit.failures.clear()
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.probe_in_flight = False
                self._transition(key, circuit, CircuitState.CLOSED, now, "probe_success")

    def record_failure(self, key: str, now: datetime) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(key, _Circuit())
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.probe_in_flight = False
                circuit.opened_at = now
                self._transition(key, circuit, CircuitState.OPEN, now, "probe_failure")
                return
            cutoff = now - timedelta(seconds=self.window_seconds)
            circuit.failures = [at for at in circuit.failures if at >= cutoff]
            circuit.failures.append(now)
            if circuit.state == CircuitState.CLOSED and len(circuit.failures) >= self.threshold:
                circuit.opened_at = now
                self._transition(key, circuit, CircuitState.OPEN, now, "failure_threshold")

    def state(self, key: str) -> CircuitState:
        with self._lock:
            circuit = self._circuits.get(key)
            return circuit.state if circuit else CircuitState.CLOSED

    def drain_transitions(self) -> List[CircuitTransition]:
        with self._lock:
            out = list(self._transitions)
            self._transitions.clear()
            return out

    def _transition(self, key: str, circuit: _Circuit, target: CircuitState, now: datetime, reason: str) -> None:
        previous = circuit.state
        circuit.state = target
        self._transitions.append(CircuitTransition(key, previous, target, now, reason))
