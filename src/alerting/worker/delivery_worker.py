import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from src.alerting.domain.alert import AlertDelivery
from src.alerting.queue.delivery_queue import SubscriberDeliveryQueue
from src.alerting.transport.delivery_transport import DeliveryTransport
from src.core.errors import DeliveryFailure
from src.core.logging.structured_logger import StructuredLogger
from src.core.retry.retry_policy import BackoffScheduler, RetryPolicy
from src.core.time.clock import Clock, SystemClock


@dataclass(frozen=True)
class DeliveryWorkerConfig:
    worker_id: str
    batch_size: int = 10
    poll_interval_seconds: float = 0.2
    visibility_timeout_seconds: int = 30
    delivery_timeout_seconds: float = 5.0


class DeliveryWorker:
    """
    Drains one subscriber's queue. A failing subscriber only ever delays its
    own deliveries.
    """

    def __init__(
        self,
        config: DeliveryWorkerConfig,
        queue: SubscriberDeliveryQueue,
        transport: DeliveryTransport,
        backoff: Optional[BackoffScheduler] = None,
        on_update: Optional[Callable[[AlertDelivery], None]] = None,
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.config = config
        self.queue = queue
        self.transport = transport
        self.backoff = backoff or BackoffScheduler(RetryPolicy())
        self.on_update = on_update
        self.clock = clock or SystemClock()
        self.logger = logger or StructuredLogger()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    def notify(self) -> None:
        self._wake_event.set()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()

    def run_forever(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._wake_event.wait(timeout=self.config.poll_interval_seconds)
            self._wake_event.clear()

    def run_once(self) -> int:
        now = self.clock.now()
        self.queue.reclaim_expired(now)
        leased = self.queue.lease(
            worker_id=self.config.worker_id,
            batch=self.config.batch_size,
            visibility_timeout=timedelta(seconds=self.config.visibility_timeout_seconds),
            now=now,
        )
        for delivery in leased:
            self._attempt(delivery)
        return len(leased)

    def _attempt(self, delivery: AlertDelivery) -> None:
        try:
            self.transport.deliver(
                delivery.subscriber_id,
                delivery.endpoint,
                delivery.alert.to_payload(),
                self.config.delivery_timeout_seconds,
            )
        except DeliveryFailure as exc:
            self._handle_failure(delivery, exc.reason)
            return
        except Exception as exc:
            self._handle_failure(delivery, f"transport_error: {exc}")
            return

        updated = self.queue.ack_delivered(delivery.delivery_id, self.config.worker_id, now=self.clock.now())
        if updated is None:
            return
        self.logger.emit(
            "DELIVERY_OK",
            delivery_id=updated.delivery_id,
            alert_id=updated.alert.alert_id,
            subscriber_id=updated.subscriber_id,
            attempts=updated.attempt_count,
        )
        self._publish(updated)

    def _handle_failure(self, delivery: AlertDelivery, reason: str) -> None:
        now = self.clock.now()
        if self.backoff.should_retry(delivery.attempt_count) and delivery.attempt_count < delivery.max_attempts:
            retry_at = self.backoff.next_attempt_at(delivery.attempt_count, now)
            updated = self.queue.release(delivery.delivery_id, self.config.worker_id, retry_at, reason, now=now)
            if updated is None:
                return
            self.logger.warning(
                "DELIVERY_RETRY",
                delivery_id=updated.delivery_id,
                alert_id=updated.alert.alert_id,
                subscriber_id=updated.subscriber_id,
                attempts=updated.attempt_count,
                retry_at=retry_at,
                reason=reason,
            )
            self._publish(updated)
            return

        updated = self.queue.move_to_dead_letter(delivery.delivery_id, self.config.worker_id, reason, now=now)
        if updated is None:
            return
        self.logger.error(
            "DELIVERY_DEAD_LETTER",
            delivery_id=updated.delivery_id,
            alert_id=updated.alert.alert_id,
            subscriber_id=updated.subscriber_id,
            attempts=updated.attempt_count,
            reason=reason,
        )
        self._publish(updated)

    def _publish(self, delivery: AlertDelivery) -> None:
        if self.on_update:
            self.on_update(delivery)
