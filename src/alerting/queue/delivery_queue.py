from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, List, Optional

from src.alerting.domain.alert import AlertDelivery, DeliveryState


class SubscriberDeliveryQueue:
    """
    Bounded, leased retry queue for a single subscriber.
    Holds pending deliveries only; an entry leaves the queue once it is
    delivered or dead-lettered (the store keeps the terminal record).
    """

    def __init__(self, subscriber_id: str, capacity: int = 1000):
        self.subscriber_id = subscriber_id
        self.capacity = max(1, int(capacity))
        self._pending: Dict[str, AlertDelivery] = {}
        self._alert_index: Dict[str, str] = {}
        self._lock = Lock()

    def enqueue(self, delivery: AlertDelivery) -> Optional[AlertDelivery]:
        """
        Returns the queued delivery: the given one, or an already pending
        delivery of the same alert. None when the queue is full.
        """
        with self._lock:
            existing = self._alert_index.get(delivery.alert.alert_id)
            if existing:
                return self._pending[existing]
            if delivery.delivery_id in self._pending:
                return self._pending[delivery.delivery_id]
            if len(self._pending) >= self.capacity:
                return None
            delivery.state = DeliveryState.PENDING
            delivery.leased_by = None
            delivery.lease_until = None
            self._pending[delivery.delivery_id] = delivery
            self._alert_index[delivery.alert.alert_id] = delivery.delivery_id
            return delivery

    def lease(self, worker_id: str, batch: int, visibility_timeout: timedelta, now: datetime) -> List[AlertDelivery]:
        leased: List[AlertDelivery] = []
        with self._lock:
            candidates = [
                d for d in self._pending.values() if d.leased_by is None and d.available_at <= now
            ]
            candidates.sort(key=lambda d: (d.available_at, d.created_at))
            for delivery in candidates[:batch]:
                delivery.leased_by = worker_id
                delivery.lease_until = now + visibility_timeout
                delivery.attempt_count += 1
                delivery.updated_at = now
                leased.append(delivery)
        return leased

    def ack_delivered(self, delivery_id: str, worker_id: str, now: datetime) -> Optional[AlertDelivery]:
        with self._lock:
            delivery = self._leased_by(delivery_id, worker_id)
            if not delivery:
                return None
            delivery.state = DeliveryState.DELIVERED
            delivery.delivered_at = now
            delivery.last_error = None
            self._clear_lease(delivery, now)
            self._forget(delivery)
            return delivery.snapshot()

    def release(self, delivery_id: str, worker_id: str, available_at: datetime, reason: str, now: datetime) -> Optional[AlertDelivery]:
        with self._lock:
            delivery = self._leased_by(delivery_id, worker_id)
            if not delivery:
                return None
            delivery.available_at = available_at
            delivery.last_error = reason
            self._clear_lease(delivery, now)
            return delivery.snapshot()

    def move_to_dead_letter(self, delivery_id: str, worker_id: str, reason: str, now: datetime) -> Optional[AlertDelivery]:
        with self._lock:
            delivery = self._leased_by(delivery_id, worker_id)
            if not delivery:
                return None
            delivery.state = DeliveryState.DEAD_LETTERED
            delivery.last_error = reason
            self._clear_lease(delivery, now)
            self._forget(delivery)
            return delivery.snapshot()

    def reclaim_expired(self, now: datetime) -> int:
        reclaimed = 0
        with self._lock:
            for delivery in self._pending.values():
                if delivery.leased_by is not None and delivery.lease_until is not None and delivery.lease_until < now:
                    self._clear_lease(delivery, now)
                    delivery.available_at = now
                    reclaimed += 1
        return reclaimed

    def drain(self) -> List[AlertDelivery]:
        """
        Remove and return every pending delivery.
        """
        with self._lock:
            drained = list(self._pending.values())
            self._pending.clear()
            self._alert_index.clear()
        return drained

    def has_pending(self, alert_id: str) -> bool:
        with self._lock:
            return alert_id in self._alert_index

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _forget(self, delivery: AlertDelivery) -> None:
        self._pending.pop(delivery.delivery_id, None)
        if self._alert_index.get(delivery.alert.alert_id) == delivery.delivery_id:
            del self._alert_index[delivery.alert.alert_id]

    def _leased_by(self, delivery_id: str, worker_id: str) -> Optional[AlertDelivery]:
        delivery = self._pending.get(delivery_id)
        if not delivery or delivery.leased_by != worker_id:
            return None
        return delivery

    def _clear_lease(self, delivery: AlertDelivery, now: datetime) -> None:
        delivery.leased_by = None
        delivery.lease_until = None
        delivery.updated_at = now
