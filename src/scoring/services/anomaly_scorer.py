import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Optional

from src.core.errors import ScorerUnavailable
from src.core.logging.structured_logger import StructuredLogger
from src.core.safety.circuit_breaker import CircuitBreaker
from src.core.time.clock import Clock, SystemClock
from src.scoring.client.scorer_client import ScorerClient, ScorerResponse
from src.scoring.domain.anomaly_score import AnomalyScore, ScoreSource
from src.scoring.domain.feature_vector import FeatureVector
from src.scoring.services.heuristic_scorer import HeuristicScorer

CIRCUIT_KEY = "scorer"


@dataclass(frozen=True)
class ScorerConfig:
    timeout_seconds: float = 2.0
    pool_size: int = 8
    admission_timeout_seconds: float = 0.5
    retry_interval_seconds: float = 0.1
    breaker_threshold: int = 5
    breaker_window_seconds: int = 30
    breaker_cooldown_seconds: int = 30


class AnomalyScorer:
    """
    Adapter in front of the external scoring service.

    Calls run on a bounded pool. A caller waits at most timeout plus one retry
    interval in total; admission wait, the call and the single retry on a
    transient failure all draw from that budget. Anything that does not yield a
    model answer in time degrades to the heuristic score.
    """

    def __init__(
        self,
        client: Optional[ScorerClient],
        config: ScorerConfig = ScorerConfig(),
        heuristic: Optional[HeuristicScorer] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.config = config
        self.heuristic = heuristic or HeuristicScorer()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            threshold=config.breaker_threshold,
            window_seconds=config.breaker_window_seconds,
            cooldown_seconds=config.breaker_cooldown_seconds,
        )
        self.clock = clock or SystemClock()
        self.logger = logger or StructuredLogger()
        self._sleep = sleep
        pool_size = max(1, int(config.pool_size))
        self._slots = threading.BoundedSemaphore(pool_size)
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="scorer")

    def score(
        self,
        features: FeatureVector,
        activity_id: str,
        signature_id: Optional[str] = None,
    ) -> AnomalyScore:
        if self.client is None:
            return self._fallback(features, activity_id, signature_id, "scorer_disabled")

        if not self.circuit_breaker.allow(CIRCUIT_KEY, now=self.clock.now()):
            return self._fallback(features, activity_id, signature_id, "circuit_open")

        deadline = time.monotonic() + self.config.timeout_seconds + self.config.retry_interval_seconds
        try:
            response = self._call_with_retry(features, activity_id, deadline)
        except ScorerUnavailable as exc:
            self.circuit_breaker.record_failure(CIRCUIT_KEY, now=self.clock.now())
            self._log_transitions()
            return self._fallback(features, activity_id, signature_id, exc.reason)

        self.circuit_breaker.record_success(CIRCUIT_KEY, now=self.clock.now())
        self._log_transitions()
        return AnomalyScore(
            activity_id=activity_id,
            identity_signature_id=signature_id,
            score=response.anomaly_probability,
            source=ScoreSource.MODEL,
            computed_at=self.clock.now(),
            model_version=response.model_version,
        )

    def heuristic_score(
        self,
        features: FeatureVector,
        activity_id: str,
        signature_id: Optional[str] = None,
        reason: str = "requested",
    ) -> AnomalyScore:
        return AnomalyScore(
            activity_id=activity_id,
            identity_signature_id=signature_id,
            score=self.heuristic.score(features),
            source=ScoreSource.HEURISTIC_FALLBACK,
            computed_at=self.clock.now(),
            fallback_reason=reason,
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _call_with_retry(self, features: FeatureVector, activity_id: str, deadline: float) -> ScorerResponse:
        first_budget = min(self.config.timeout_seconds, deadline - time.monotonic())
        try:
            return self._call_once(features, activity_id, first_budget)
        except ScorerUnavailable as exc:
            if not exc.transient:
                raise
        self._sleep(self.config.retry_interval_seconds)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ScorerUnavailable("retry_budget_exhausted", transient=False)
        return self._call_once(features, activity_id, remaining)

    def _call_once(self, features: FeatureVector, activity_id: str, budget: float) -> ScorerResponse:
        started = time.monotonic()
        admission_wait = max(0.0, min(self.config.admission_timeout_seconds, budget))
        if not self._slots.acquire(timeout=admission_wait):
            raise ScorerUnavailable("admission_timeout", transient=False)
        try:
            future: Future = self._executor.submit(
                self.client.predict, activity_id, features.as_list(), self.config.timeout_seconds
            )
        except RuntimeError:
            self._slots.release()
            raise ScorerUnavailable("scorer_pool_closed", transient=False)
        # The slot stays taken until the call really finishes, even after we stop waiting
        future.add_done_callback(lambda _: self._slots.release())

        remaining = budget - (time.monotonic() - started)
        try:
            return future.result(timeout=max(0.0, remaining))
        except FutureTimeout:
            future.cancel()
            raise ScorerUnavailable("timeout", transient=False)
        except ScorerUnavailable:
            raise
        except Exception as exc:
            raise ScorerUnavailable(f"client_error: {exc}", transient=False) from exc

    def _fallback(
        self,
        features: FeatureVector,
        activity_id: str,
        signature_id: Optional[str],
        reason: str,
    ) -> AnomalyScore:
        result = self.heuristic_score(features, activity_id, signature_id, reason=reason)
        self.logger.warning(
            "SCORER_FALLBACK",
            activity_id=activity_id,
            reason=reason,
            score=result.score,
        )
        return result

    def _log_transitions(self) -> None:
        for transition in self.circuit_breaker.drain_transitions():
            self.logger.warning(
                "SCORER_CIRCUIT",
                previous=transition.previous.value,
                current=transition.current.value,
                reason=transition.reason,
            )
