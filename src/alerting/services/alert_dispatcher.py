import threading
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from src.alerting.domain.alert import Alert, AlertDelivery, DeliveryState, alert_id_for
from src.alerting.queue.delivery_queue import SubscriberDeliveryQueue
from src.alerting.registry.subscription_registry import SubscriptionRegistry
from src.alerting.transport.delivery_transport import DeliveryTransport
from src.alerting.worker.delivery_worker import DeliveryWorker, DeliveryWorkerConfig
from src.core.logging.structured_logger import StructuredLogger
from src.core.retry.retry_policy import BackoffScheduler, RetryPolicy
from src.core.time.clock import Clock, SystemClock
from src.ingestion.domain.normalized_activity import NormalizedActivity
from src.scoring.domain.anomaly_score import AnomalyScore
from src.store.activity_store import ActivityStore

NO_MATCHING_SUBSCRIPTION = "no_matching_subscription"
QUEUE_FULL = "queue_full"
SUBSCRIPTION_REMOVED = "subscription_removed"


@dataclass(frozen=True)
class DispatcherConfig:
    global_threshold: float = 0.6
    queue_capacity: int = 1000
    batch_size: int = 10
    poll_interval_seconds: float = 0.2
    visibility_timeout_seconds: int = 30
    delivery_timeout_seconds: float = 5.0


class _SubscriberChannel:
    def __init__(self, queue: SubscriberDeliveryQueue, worker: DeliveryWorker):
        self.queue = queue
        self.worker = worker
        self.thread: Optional[threading.Thread] = None


class AlertDispatcher:
    """
    Turns above-threshold scores into alerts and fans them out to matching
    subscriptions. Each subscriber has its own bounded queue and worker thread;
    delivery is at-least-once and exhausted deliveries are dead-lettered.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        transport: DeliveryTransport,
        store: ActivityStore,
        config: DispatcherConfig = DispatcherConfig(),
        retry_policy: RetryPolicy = RetryPolicy(),
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.registry = registry
        self.transport = transport
        self.store = store
        self.config = config
        self.retry_policy = retry_policy
        self.backoff = BackoffScheduler(retry_policy)
        self.clock = clock or SystemClock()
        self.logger = logger or StructuredLogger()
        self._channels: Dict[str, _SubscriberChannel] = {}
        self._channels_lock = threading.Lock()
        self._alert_lock = threading.Lock()
        self._running = False

    def dispatch(self, activity: NormalizedActivity, score: AnomalyScore) -> Optional[Alert]:
        if score.score < self.config.global_threshold:
            return None

        now = self.clock.now()
        alert = Alert(
            alert_id=alert_id_for(activity.activity_id),
            activity_id=activity.activity_id,
            identity_signature_id=score.identity_signature_id,
            platform=activity.platform,
            score=score.score,
            reason=(
                f"score {score.score:.2f} >= threshold {self.config.global_threshold:.2f} "
                f"({score.source.value})"
            ),
            created_at=now,
        )
        targets = [s for s in self.registry.list() if s.matches(activity.platform, score.score)]
        if not targets:
            alert = replace(
                alert,
                delivery_state=DeliveryState.DEAD_LETTERED,
                dead_letter_reason=NO_MATCHING_SUBSCRIPTION,
            )
            self.store.save_alert(alert)
            self.logger.warning(
                "DELIVERY_DEAD_LETTER",
                alert_id=alert.alert_id,
                activity_id=alert.activity_id,
                reason=NO_MATCHING_SUBSCRIPTION,
            )
            return alert

        self.store.save_alert(alert)
        self.logger.emit(
            "ALERT_CREATED",
            alert_id=alert.alert_id,
            activity_id=alert.activity_id,
            score=alert.score,
            subscribers=len(targets),
        )
        planned = []
        for subscription in targets:
            channel = self._channel(subscription.subscriber_id)
            if channel.queue.has_pending(alert.alert_id):
                continue
            delivery = AlertDelivery.new(
                alert,
                subscriber_id=subscription.subscriber_id,
                endpoint=subscription.delivery_endpoint,
                now=now,
                max_attempts=self.retry_policy.max_attempts,
            )
            # Recorded before any worker can see it
            self.store.save_delivery(delivery)
            planned.append((channel, delivery))

        for channel, delivery in planned:
            self._enqueue(channel, delivery)
        self._refresh_alert(alert.alert_id)
        return self.store.get_alert(alert.alert_id)

    def replay_dead_letter(self, delivery_id: str) -> Optional[AlertDelivery]:
        """
        Put a dead-lettered delivery back on its subscriber's queue with a
        fresh attempt budget. None when the id is unknown or not dead-lettered.
        """
        delivery = self.store.get_delivery(delivery_id)
        if delivery is None or delivery.state != DeliveryState.DEAD_LETTERED:
            return None
        now = self.clock.now()
        delivery.state = DeliveryState.PENDING
        delivery.attempt_count = 0
        delivery.replay_count += 1
        delivery.available_at = now
        delivery.updated_at = now
        delivery.leased_by = None
        delivery.lease_until = None
        self.store.save_delivery(delivery)
        replayed = self._enqueue(self._channel(delivery.subscriber_id), delivery)
        self._refresh_alert(delivery.alert.alert_id)
        self.logger.emit(
            "DELIVERY_REPLAYED",
            delivery_id=delivery.delivery_id,
            alert_id=delivery.alert.alert_id,
            subscriber_id=delivery.subscriber_id,
            state=replayed.state.value,
        )
        return replayed.snapshot()

    def recover(self) -> int:
        """
        Requeue deliveries the store still records as pending, e.g. after a
        restart or a shutdown that ran out of drain time.
        """
        recovered = 0
        touched = set()
        for delivery in self.store.pending_deliveries():
            channel = self._channel(delivery.subscriber_id)
            if channel.queue.has_pending(delivery.alert.alert_id):
                continue
            self._enqueue(channel, delivery)
            touched.add(delivery.alert.alert_id)
            recovered += 1
        for alert_id in touched:
            self._refresh_alert(alert_id)
        if recovered:
            self.logger.emit("DELIVERY_RECOVERED", count=recovered)
        return recovered

    def remove_subscription(self, subscriber_id: str) -> bool:
        """
        Remove the subscription and close its delivery channel. Deliveries
        still queued for it are dead-lettered.
        """
        removed = self.registry.remove(subscriber_id)
        with self._channels_lock:
            channel = self._channels.pop(subscriber_id, None)
        if channel is None:
            return removed
        channel.worker.stop()
        if channel.thread:
            channel.thread.join(timeout=2.0)
            channel.thread = None
        touched = set()
        for delivery in channel.queue.drain():
            self._dead_letter(delivery, SUBSCRIPTION_REMOVED)
            touched.add(delivery.alert.alert_id)
        for alert_id in touched:
            self._refresh_alert(alert_id)
        return removed

    def dead_letters(self, limit: int = 100) -> List[AlertDelivery]:
        return self.store.list_deliveries(state=DeliveryState.DEAD_LETTERED, limit=limit)

    def pending_count(self) -> int:
        with self._channels_lock:
            channels = list(self._channels.values())
        return sum(c.queue.pending_count() for c in channels)

    def run_pending(self) -> int:
        """
        Single synchronous delivery pass over every subscriber queue.
        """
        with self._channels_lock:
            channels = list(self._channels.values())
        return sum(c.worker.run_once() for c in channels)

    def start(self) -> None:
        self.recover()
        with self._channels_lock:
            if self._running:
                return
            self._running = True
            for channel in self._channels.values():
                self._start_thread(channel)

    def stop(self, drain_seconds: float = 10.0) -> int:
        """
        Flush pending deliveries until the queues are empty or drain_seconds
        elapse, then stop the workers. Returns how many deliveries are still
        pending (they stay recorded as pending in the store).
        """
        deadline = time.monotonic() + max(0.0, drain_seconds)
        while self.pending_count() and time.monotonic() < deadline:
            if not self._running:
                self.run_pending()
            time.sleep(min(self.config.poll_interval_seconds, max(0.0, deadline - time.monotonic())))
        with self._channels_lock:
            self._running = False
            channels = list(self._channels.values())
        for channel in channels:
            channel.worker.stop()
        for channel in channels:
            if channel.thread:
                channel.thread.join(timeout=2.0)
                channel.thread = None
        return self.pending_count()

    def _channel(self, subscriber_id: str) -> _SubscriberChannel:
        with self._channels_lock:
            channel = self._channels.get(subscriber_id)
            if channel:
                return channel
            queue = SubscriberDeliveryQueue(subscriber_id, capacity=self.config.queue_capacity)
            worker = DeliveryWorker(
                config=DeliveryWorkerConfig(
                    worker_id=f"delivery-{subscriber_id}",
                    batch_size=self.config.batch_size,
                    poll_interval_seconds=self.config.poll_interval_seconds,
                    visibility_timeout_seconds=self.config.visibility_timeout_seconds,
                    delivery_timeout_seconds=self.config.delivery_timeout_seconds,
                ),
                queue=queue,
                transport=self.transport,
                backoff=self.backoff,
                on_update=self._on_delivery_update,
                clock=self.clock,
                logger=self.logger.bind(subscriber_id=subscriber_id),
            )
            channel = _SubscriberChannel(queue, worker)
            self._channels[subscriber_id] = channel
            if self._running:
                self._start_thread(channel)
            return channel

    def _start_thread(self, channel: _SubscriberChannel) -> None:
        channel.thread = threading.Thread(target=channel.worker.run_forever, daemon=True)
        channel.thread.start()

    def _enqueue(self, channel: _SubscriberChannel, delivery: AlertDelivery) -> AlertDelivery:
        queued = channel.queue.enqueue(delivery)
        if queued is not None:
            channel.worker.notify()
            return queued
        self._dead_letter(delivery, QUEUE_FULL)
        return delivery

    def _dead_letter(self, delivery: AlertDelivery, reason: str) -> None:
        delivery.state = DeliveryState.DEAD_LETTERED
        delivery.last_error = reason
        delivery.leased_by = None
        delivery.lease_until = None
        delivery.updated_at = self.clock.now()
        self.logger.error(
            "DELIVERY_DEAD_LETTER",
            delivery_id=delivery.delivery_id,
            alert_id=delivery.alert.alert_id,
            subscriber_id=delivery.subscriber_id,
            reason=reason,
        )
        self.store.save_delivery(delivery)

    def _on_delivery_update(self, delivery: AlertDelivery) -> None:
        self.store.save_delivery(delivery)
        self._refresh_alert(delivery.alert.alert_id)

    def _refresh_alert(self, alert_id: str) -> None:
        with self._alert_lock:
            alert = self.store.get_alert(alert_id)
            if alert is None:
                return
            deliveries = self.store.deliveries_for_alert(alert.alert_id)
            state = derive_alert_state(deliveries)
            if state != alert.delivery_state:
                reason = None
                if state == DeliveryState.DEAD_LETTERED:
                    reason = next(
                        (d.last_error for d in deliveries if d.state == DeliveryState.DEAD_LETTERED),
                        None,
                    )
                self.store.save_alert(replace(alert, delivery_state=state, dead_letter_reason=reason))


def derive_alert_state(deliveries: List[AlertDelivery]) -> DeliveryState:
    if not deliveries or any(d.state == DeliveryState.PENDING for d in deliveries):
        return DeliveryState.PENDING
    if any(d.state == DeliveryState.DEAD_LETTERED for d in deliveries):
        return DeliveryState.DEAD_LETTERED
    return DeliveryState.DELIVERED
