from datetime import datetime, timedelta, timezone

import pytest

from src.alerting.domain.alert import DeliveryState
from src.alerting.registry.subscription_registry import InMemorySubscriptionRegistry
from src.alerting.services.alert_dispatcher import AlertDispatcher, DispatcherConfig
from src.alerting.transport.delivery_transport import DeliveryTransport
from src.core.errors import ConflictingWrite, MalformedEvent
from src.core.retry.retry_policy import RetryPolicy
from src.core.time.clock import FrozenClock
from src.correlation.services.identity_correlator import IdentityCorrelator
from src.ingestion.dedup.deduplicator import DeduplicatorConfig, InMemoryDeduplicator
from src.ingestion.domain.raw_event import RawEvent
from src.ingestion.services.event_normalizer import EventNormalizer, activity_id_for
from src.pipeline.services.activity_pipeline import ActivityPipeline, OutcomeStatus
from src.scoring.domain.anomaly_score import ScoreSource
from src.scoring.services.anomaly_scorer import AnomalyScorer
from src.scoring.services.feature_extractor import FeatureConfig, FeatureExtractor
from src.store.activity_store import InMemoryActivityStore
from src.store.domain.activity_record import ActivityQuery

T = 1760000000
START = datetime.fromtimestamp(T, tz=timezone.utc)


class _Transport(DeliveryTransport):
    def __init__(self):
        self.delivered = []

    def deliver(self, subscriber_id, endpoint, payload, timeout):
        self.delivered.append((endpoint, payload))


class _FlakyStore(InMemoryActivityStore):
    def __init__(self):
        super().__init__()
        self.fail_next = False

    def append(self, record):
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("disk full")
        return super().append(record)


class _Harness:
    def __init__(self):
        self.clock = FrozenClock(START)
        self.store = _FlakyStore()
        self.registry = InMemorySubscriptionRegistry(clock=self.clock)
        self.transport = _Transport()
        self.dedup = InMemoryDeduplicator(DeduplicatorConfig(window_seconds=3600), clock=self.clock)
        self.correlator = IdentityCorrelator(clock=self.clock, on_version=self.store.append_signature)
        self.dispatcher = AlertDispatcher(
            registry=self.registry,
            transport=self.transport,
            store=self.store,
            config=DispatcherConfig(global_threshold=0.6),
            retry_policy=RetryPolicy(jitter_ratio=0.0),
            clock=self.clock,
        )
        self.pipeline = ActivityPipeline(
            normalizer=EventNormalizer(),
            deduplicator=self.dedup,
            correlator=self.correlator,
            extractor=FeatureExtractor(FeatureConfig(suspicious_terms=("mdma", "escort"))),
            scorer=AnomalyScorer(None, clock=self.clock),
            store=self.store,
            dispatcher=self.dispatcher,
            clock=self.clock,
        )


def _raw(payload: dict, platform: str = "telegram", source_id: str = "m-1") -> RawEvent:
    return RawEvent(platform=platform, source_id=source_id, payload=payload, received_at=START)


def _mdma(ts: int = T) -> dict:
    return {"text": "selling MDMA", "from": {"fingerprint": "fp1"}, "ts": ts}


def test_end_to_end_alert_for_suspicious_telegram_message():
    h = _Harness()
    h.registry.register("http://ops/hook", 0.5, ["telegram"])
    h.registry.register("http://ig/hook", 0.0, ["instagram"])

    outcome = h.pipeline.process(_raw(_mdma()))
    h.dispatcher.run_pending()

    assert outcome.status == OutcomeStatus.ACCEPTED
    assert outcome.activity_id == activity_id_for("telegram", "m-1", "selling MDMA")
    assert h.correlator.resolve(outcome.signature_id).confidence == pytest.approx(0.9)
    assert outcome.score.source == ScoreSource.HEURISTIC_FALLBACK
    assert outcome.score.score >= 0.6
    record = h.store.get(outcome.activity_id)
    assert record.features.keyword_hits == 1
    assert record.identity_resolved
    assert [endpoint for endpoint, _ in h.transport.delivered] == ["http://ops/hook"]
    payload = h.transport.delivered[0][1]
    assert payload["activityId"] == outcome.activity_id
    assert payload["alertId"] == outcome.alert.alert_id
    assert h.store.get_alert(outcome.alert.alert_id).delivery_state == DeliveryState.DELIVERED
    assert h.store.signature_versions(outcome.signature_id)


def test_benign_activity_is_stored_without_alert():
    h = _Harness()
    h.registry.register("http://ops/hook", 0.0, ["telegram"])

    outcome = h.pipeline.process(_raw({"text": "see you tomorrow", "from": {"fingerprint": "fp2"}, "ts": T}))

    assert outcome.status == OutcomeStatus.ACCEPTED
    assert outcome.alert is None
    assert h.store.get(outcome.activity_id) is not None
    assert h.dispatcher.pending_count() == 0


def test_resubmission_inside_window_is_duplicate():
    h = _Harness()
    first = h.pipeline.process(_raw(_mdma()))
    second = h.pipeline.process(_raw(_mdma()))

    assert first.status == OutcomeStatus.ACCEPTED
    assert second.status == OutcomeStatus.DUPLICATE
    assert second.activity_id == first.activity_id


def test_reprocessing_after_window_is_a_store_no_op():
    h = _Harness()
    h.registry.register("http://ops/hook", 0.0, ["telegram"])
    first = h.pipeline.process(_raw(_mdma()))
    h.dispatcher.run_pending()

    h.clock.advance(hours=2)
    again = h.pipeline.process(_raw(_mdma()))
    h.dispatcher.run_pending()

    assert again.status == OutcomeStatus.REPLAYED
    assert again.score == first.score
    assert len(h.transport.delivered) == 1


def test_changed_content_under_same_id_surfaces_conflict():
    h = _Harness()
    h.pipeline.process(_raw(_mdma()))
    h.clock.advance(hours=2)

    with pytest.raises(ConflictingWrite):
        h.pipeline.process(_raw(_mdma(ts=T + 60)))

    assert h.dedup.seen(activity_id_for("telegram", "m-1", "selling MDMA"))


def test_conflicting_event_leaves_signatures_untouched():
    h = _Harness()
    h.pipeline.process(_raw(_mdma()))
    versions = h.store.signature_versions()
    heads = h.correlator.heads()
    h.clock.advance(hours=2)

    changed = {"text": "selling MDMA", "from": {"fingerprint": "fp9"}, "ts": T}
    with pytest.raises(ConflictingWrite):
        h.pipeline.process(_raw(changed))

    assert h.store.signature_versions() == versions
    assert h.correlator.heads() == heads
    assert h.store.query(ActivityQuery())[0].activity.signals.fingerprint == "fp1"


def test_unexpected_failure_releases_dedup_mark():
    h = _Harness()
    h.store.fail_next = True

    with pytest.raises(RuntimeError):
        h.pipeline.process(_raw(_mdma()))

    activity_id = activity_id_for("telegram", "m-1", "selling MDMA")
    assert not h.dedup.seen(activity_id)
    assert h.pipeline.process(_raw(_mdma())).status == OutcomeStatus.ACCEPTED


def test_malformed_event_is_rejected():
    h = _Harness()
    with pytest.raises(MalformedEvent):
        h.pipeline.process(_raw({"from": {"fingerprint": "fp1"}, "ts": T}))
    assert h.store.query(ActivityQuery()) == []


def test_activity_without_identity_signals_is_unresolved():
    h = _Harness()
    outcome = h.pipeline.process(_raw({"text": "hello", "ts": T}))

    record = h.store.get(outcome.activity_id)
    assert outcome.signature_id is None
    assert not record.identity_resolved


def test_history_of_merged_identity_feeds_features():
    h = _Harness()
    h.pipeline.process(_raw({"text": "hi", "from": {"fingerprint": "fp1"}, "ts": T}, source_id="1"))
    h.pipeline.process(
        _raw({"caption": "hello", "device": {"fingerprint": "fp1"}, "taken_at": T + 60}, platform="instagram", source_id="2")
    )
    outcome = h.pipeline.process(_raw({"text": "again", "from": {"fingerprint": "fp1"}, "ts": T + 120}, source_id="3"))

    record = h.store.get(outcome.activity_id)
    assert record.features.message_frequency == 3.0
    assert record.features.platform_diversity == 2.0
