import random
from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    factor: float = 2.0
    max_delay_seconds: float = 60.0
    jitter_ratio: float = 0.2


class BackoffScheduler:
    """
    Exponential backoff over a bounded attempt budget.
    """

    def __init__(self, policy: RetryPolicy = RetryPolicy()):
        self.policy = policy

    def should_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.policy.max_attempts

    def delay_for(self, attempt_count: int) -> float:
        base = self.policy.base_delay_seconds * (self.policy.factor ** max(0, attempt_count - 1))
        capped = min(base, self.policy.max_delay_seconds)
        spread = capped * self.policy.jitter_ratio
        return max(0.0, capped + random.uniform(-spread, spread))

    def next_attempt_at(self, attempt_count: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempt_count))
