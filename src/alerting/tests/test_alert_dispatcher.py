from datetime import datetime, timezone

from src.alerting.domain.alert import DeliveryState, alert_id_for
from src.alerting.registry.subscription_registry import InMemorySubscriptionRegistry
from src.alerting.services.alert_dispatcher import (
    NO_MATCHING_SUBSCRIPTION,
    QUEUE_FULL,
    SUBSCRIPTION_REMOVED,
    AlertDispatcher,
    DispatcherConfig,
)
from src.alerting.transport.delivery_transport import DeliveryTransport
from src.core.errors import DeliveryFailure
from src.core.retry.retry_policy import RetryPolicy
from src.core.time.clock import FrozenClock
from src.ingestion.domain.normalized_activity import NormalizedActivity
from src.scoring.domain.anomaly_score import AnomalyScore, ScoreSource
from src.store.activity_store import InMemoryActivityStore

T0 = datetime(2025, 10, 9, 12, 0, tzinfo=timezone.utc)


class _Transport(DeliveryTransport):
    def __init__(self):
        self.down = set()
        self.delivered = []
        self.attempts = []

    def deliver(self, subscriber_id, endpoint, payload, timeout):
        self.attempts.append(endpoint)
        if endpoint in self.down:
            raise DeliveryFailure(subscriber_id, "unreachable")
        self.delivered.append((endpoint, payload["alertId"]))


def _activity(activity_id: str = "act-1", platform: str = "telegram") -> NormalizedActivity:
    return NormalizedActivity(activity_id=activity_id, platform=platform, occurred_at=T0, text="selling MDMA")


def _score(activity_id: str = "act-1", value: float = 0.8) -> AnomalyScore:
    return AnomalyScore(
        activity_id=activity_id,
        identity_signature_id="sig-1",
        score=value,
        source=ScoreSource.HEURISTIC_FALLBACK,
        computed_at=T0,
    )


def _dispatcher(store, transport, clock, registry=None, max_attempts: int = 3, queue_capacity: int = 1000):
    return AlertDispatcher(
        registry=registry or InMemorySubscriptionRegistry(clock=clock),
        transport=transport,
        store=store,
        config=DispatcherConfig(global_threshold=0.6, queue_capacity=queue_capacity),
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay_seconds=1.0, jitter_ratio=0.0),
        clock=clock,
    )


def _setup(max_attempts: int = 3, queue_capacity: int = 1000):
    clock = FrozenClock(T0)
    registry = InMemorySubscriptionRegistry(clock=clock)
    transport = _Transport()
    store = InMemoryActivityStore()
    dispatcher = _dispatcher(store, transport, clock, registry, max_attempts, queue_capacity)
    return dispatcher, registry, transport, store, clock


def test_below_threshold_is_a_no_op():
    dispatcher, registry, transport, store, _ = _setup()
    registry.register("http://ops/hook", 0.0, ["telegram"])

    assert dispatcher.dispatch(_activity(), _score(value=0.59)) is None
    assert store.get_alert(alert_id_for("act-1")) is None
    assert dispatcher.run_pending() == 0


def test_alert_fans_out_to_matching_subscribers_only():
    dispatcher, registry, transport, store, _ = _setup()
    registry.register("http://a/hook", 0.5, ["telegram"])
    registry.register("http://b/hook", 0.9, ["telegram"])
    registry.register("http://c/hook", 0.0, ["instagram"])

    alert = dispatcher.dispatch(_activity(), _score(value=0.8))
    dispatcher.run_pending()

    assert alert.alert_id == alert_id_for("act-1")
    assert transport.delivered == [("http://a/hook", alert.alert_id)]
    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.DELIVERED


def test_delivery_succeeds_after_subscriber_recovers():
    dispatcher, registry, transport, store, clock = _setup(max_attempts=3)
    registry.register("http://ops/hook", 0.0, ["telegram"])
    transport.down.add("http://ops/hook")

    alert = dispatcher.dispatch(_activity(), _score())
    dispatcher.run_pending()
    clock.advance(seconds=1)
    dispatcher.run_pending()
    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.PENDING

    transport.down.clear()
    clock.advance(seconds=2)
    dispatcher.run_pending()

    assert transport.delivered == [("http://ops/hook", alert.alert_id)]
    [delivery] = store.deliveries_for_alert(alert.alert_id)
    assert delivery.state == DeliveryState.DELIVERED
    assert delivery.attempt_count == 3
    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.DELIVERED


def test_retry_waits_for_backoff():
    dispatcher, registry, transport, _, clock = _setup()
    registry.register("http://ops/hook", 0.0, ["telegram"])
    transport.down.add("http://ops/hook")

    dispatcher.dispatch(_activity(), _score())
    dispatcher.run_pending()
    clock.advance(seconds=0.5)

    assert dispatcher.run_pending() == 0
    assert len(transport.attempts) == 1


def test_exhausted_budget_dead_letters_and_replay_recovers():
    dispatcher, registry, transport, store, clock = _setup(max_attempts=3)
    registry.register("http://ops/hook", 0.0, ["telegram"])
    transport.down.add("http://ops/hook")

    alert = dispatcher.dispatch(_activity(), _score())
    for step in (1, 2, 4):
        dispatcher.run_pending()
        clock.advance(seconds=step)

    stored = store.get_alert(alert.alert_id)
    assert stored.delivery_state == DeliveryState.DEAD_LETTERED
    assert stored.dead_letter_reason == "unreachable"
    [dead] = dispatcher.dead_letters()
    assert dead.attempt_count == 3
    assert len(transport.attempts) == 3

    transport.down.clear()
    replayed = dispatcher.replay_dead_letter(dead.delivery_id)
    assert replayed.state == DeliveryState.PENDING
    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.PENDING
    dispatcher.run_pending()

    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.DELIVERED
    assert dispatcher.dead_letters() == []
    assert dispatcher.replay_dead_letter(dead.delivery_id) is None


def test_broken_subscriber_does_not_block_healthy_one():
    dispatcher, registry, transport, store, clock = _setup()
    registry.register("http://healthy/hook", 0.0, ["telegram"])
    registry.register("http://broken/hook", 0.0, ["telegram"])
    transport.down.add("http://broken/hook")

    alert = dispatcher.dispatch(_activity(), _score())
    dispatcher.run_pending()

    assert transport.delivered == [("http://healthy/hook", alert.alert_id)]
    states = {d.endpoint: d.state for d in store.deliveries_for_alert(alert.alert_id)}
    assert states == {
        "http://healthy/hook": DeliveryState.DELIVERED,
        "http://broken/hook": DeliveryState.PENDING,
    }
    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.PENDING


def test_alert_without_matching_subscription_is_dead_lettered():
    dispatcher, registry, _, store, _ = _setup()
    registry.register("http://ig/hook", 0.0, ["instagram"])

    alert = dispatcher.dispatch(_activity(), _score())

    assert alert.delivery_state == DeliveryState.DEAD_LETTERED
    assert alert.dead_letter_reason == NO_MATCHING_SUBSCRIPTION
    assert store.get_alert(alert.alert_id) == alert


def test_full_subscriber_queue_dead_letters_new_delivery():
    dispatcher, registry, _, store, _ = _setup(queue_capacity=1)
    registry.register("http://ops/hook", 0.0, ["telegram"])

    first = dispatcher.dispatch(_activity("act-1"), _score("act-1"))
    second = dispatcher.dispatch(_activity("act-2"), _score("act-2"))

    assert first.delivery_state == DeliveryState.PENDING
    assert second.delivery_state == DeliveryState.DEAD_LETTERED
    assert second.dead_letter_reason == QUEUE_FULL
    assert dispatcher.pending_count() == 1


def test_redispatch_while_pending_does_not_duplicate_delivery():
    dispatcher, registry, transport, store, _ = _setup()
    registry.register("http://ops/hook", 0.0, ["telegram"])

    first = dispatcher.dispatch(_activity(), _score())
    again = dispatcher.dispatch(_activity(), _score())
    dispatcher.run_pending()

    assert again.alert_id == first.alert_id
    assert len(store.deliveries_for_alert(first.alert_id)) == 1
    assert len(transport.delivered) == 1


def test_stop_flushes_pending_deliveries():
    dispatcher, registry, transport, store, _ = _setup()
    registry.register("http://ops/hook", 0.0, ["telegram"])
    dispatcher.start()

    alert = dispatcher.dispatch(_activity(), _score())
    remaining = dispatcher.stop(drain_seconds=2.0)

    assert remaining == 0
    assert transport.delivered == [("http://ops/hook", alert.alert_id)]


def test_subscription_filter_requires_platform_and_min_score():
    _, registry, _, _, _ = _setup()
    subscription = registry.register("http://ops/hook", 0.7, ["Telegram", " "])

    assert subscription.platforms == frozenset({"telegram"})
    assert subscription.matches("telegram", 0.7)
    assert not subscription.matches("telegram", 0.69)
    assert not subscription.matches("whatsapp", 0.99)


def test_restarted_dispatcher_delivers_what_the_store_holds_as_pending():
    dispatcher, registry, transport, store, clock = _setup()
    registry.register("http://ops/hook", 0.0, ["telegram"])
    alert = dispatcher.dispatch(_activity(), _score())

    restarted = _dispatcher(store, transport, clock)
    assert restarted.recover() == 1
    assert restarted.pending_count() == 1
    restarted.run_pending()

    assert transport.delivered == [("http://ops/hook", alert.alert_id)]
    assert store.pending_deliveries() == []
    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.DELIVERED


def test_start_requeues_pending_deliveries():
    dispatcher, registry, transport, store, clock = _setup()
    registry.register("http://ops/hook", 0.0, ["telegram"])
    alert = dispatcher.dispatch(_activity(), _score())

    restarted = _dispatcher(store, transport, clock)
    restarted.start()
    remaining = restarted.stop(drain_seconds=2.0)

    assert remaining == 0
    assert transport.delivered == [("http://ops/hook", alert.alert_id)]


def test_recover_skips_deliveries_already_queued():
    dispatcher, registry, transport, store, _ = _setup()
    registry.register("http://ops/hook", 0.0, ["telegram"])
    dispatcher.dispatch(_activity(), _score())

    assert dispatcher.recover() == 0
    dispatcher.run_pending()
    assert len(transport.delivered) == 1


def test_queue_full_dead_letter_can_be_replayed():
    dispatcher, registry, transport, store, _ = _setup(queue_capacity=1)
    registry.register("http://ops/hook", 0.0, ["telegram"])
    first = dispatcher.dispatch(_activity("act-1"), _score("act-1"))
    second = dispatcher.dispatch(_activity("act-2"), _score("act-2"))
    [dead] = dispatcher.dead_letters()
    assert dead.last_error == QUEUE_FULL

    dispatcher.run_pending()
    replayed = dispatcher.replay_dead_letter(dead.delivery_id)
    assert replayed.state == DeliveryState.PENDING
    assert replayed.replay_count == 1
    dispatcher.run_pending()

    assert transport.delivered == [
        ("http://ops/hook", first.alert_id),
        ("http://ops/hook", second.alert_id),
    ]
    assert store.get_alert(second.alert_id).delivery_state == DeliveryState.DELIVERED
    assert dispatcher.dead_letters() == []


def test_dead_letter_from_previous_run_can_be_replayed():
    dispatcher, registry, transport, store, clock = _setup(max_attempts=1)
    registry.register("http://ops/hook", 0.0, ["telegram"])
    transport.down.add("http://ops/hook")
    alert = dispatcher.dispatch(_activity(), _score())
    dispatcher.run_pending()
    [dead] = dispatcher.dead_letters()

    transport.down.clear()
    restarted = _dispatcher(store, transport, clock, max_attempts=1)
    assert restarted.replay_dead_letter(dead.delivery_id) is not None
    restarted.run_pending()

    assert transport.delivered == [("http://ops/hook", alert.alert_id)]
    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.DELIVERED


def test_removing_subscription_dead_letters_its_queued_deliveries():
    dispatcher, registry, transport, store, _ = _setup()
    subscription = registry.register("http://ops/hook", 0.0, ["telegram"])
    alert = dispatcher.dispatch(_activity(), _score())

    assert dispatcher.remove_subscription(subscription.subscriber_id)

    assert registry.get(subscription.subscriber_id) is None
    assert dispatcher.pending_count() == 0
    assert dispatcher.run_pending() == 0
    [dead] = dispatcher.dead_letters()
    assert dead.last_error == SUBSCRIPTION_REMOVED
    assert store.get_alert(alert.alert_id).delivery_state == DeliveryState.DEAD_LETTERED
    assert transport.delivered == []
    assert not dispatcher.remove_subscription(subscription.subscriber_id)
