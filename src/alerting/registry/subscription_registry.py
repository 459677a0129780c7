import uuid
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Iterable, List, Optional

from src.alerting.domain.subscription import Subscription
from src.core.time.clock import Clock, SystemClock


class SubscriptionRegistry(ABC):
    """
    Owned by the alerting boundary; the dispatcher only reads it.
    """

    @abstractmethod
    def register(self, delivery_endpoint: str, min_score: float, platforms: Iterable[str]) -> Subscription:
        pass

    @abstractmethod
    def remove(self, subscriber_id: str) -> bool:
        pass

    @abstractmethod
    def get(self, subscriber_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    def list(self) -> List[Subscription]:
        pass


class InMemorySubscriptionRegistry(SubscriptionRegistry):
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = Lock()

    def register(self, delivery_endpoint: str, min_score: float, platforms: Iterable[str]) -> Subscription:
        if not delivery_endpoint:
            raise ValueError("delivery_endpoint is required")
        min_score = float(min_score)
        if not 0.0 <= min_score <= 1.0:
            raise ValueError(f"min_score out of range: {min_score}")
        subscription = Subscription(
            subscriber_id=str(uuid.uuid4()),
            delivery_endpoint=delivery_endpoint,
            min_score=min_score,
            platforms=frozenset(p.strip().lower() for p in platforms if p and p.strip()),
            created_at=self.clock.now(),
        )
        with self._lock:
            self._subscriptions[subscription.subscriber_id] = subscription
        return subscription

    def remove(self, subscriber_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscriber_id, None) is not None

    def get(self, subscriber_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscriber_id)

    def list(self) -> List[Subscription]:
        with self._lock:
            return sorted(self._subscriptions.values(), key=lambda s: (s.created_at, s.subscriber_id))
