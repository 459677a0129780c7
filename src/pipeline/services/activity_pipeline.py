from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from src.alerting.domain.alert import Alert
from src.alerting.services.alert_dispatcher import AlertDispatcher
from src.core.errors import ConflictingWrite, MalformedEvent
from src.core.logging.structured_logger import StructuredLogger
from src.core.time.clock import Clock, SystemClock
from src.correlation.services.identity_correlator import IdentityCorrelator
from src.ingestion.dedup.deduplicator import Admission, Deduplicator
from src.ingestion.domain.raw_event import RawEvent
from src.ingestion.services.event_normalizer import EventNormalizer
from src.scoring.domain.anomaly_score import AnomalyScore
from src.scoring.services.anomaly_scorer import AnomalyScorer
from src.scoring.services.feature_extractor import FeatureExtractor
from src.store.activity_store import ActivityStore, activity_content_hash
from src.store.domain.activity_record import ActivityRecord


class OutcomeStatus(Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REPLAYED = "replayed"


@dataclass(frozen=True)
class PipelineOutcome:
    status: OutcomeStatus
    activity_id: str
    signature_id: Optional[str] = None
    score: Optional[AnomalyScore] = None
    alert: Optional[Alert] = None


@dataclass(frozen=True)
class PipelineConfig:
    history_window_seconds: int = 3600
    history_limit: int = 500


class ActivityPipeline:
    """
    Normalize -> dedup -> correlate -> features -> score -> store -> dispatch.

    An id already on record is answered from the store: same content is a
    replay, different content raises ConflictingWrite, and neither is
    correlated again. MalformedEvent and ConflictingWrite propagate to the
    caller. Any other failure between admission and the store write releases
    the dedup mark so the event can be submitted again.
    """

    def __init__(
        self,
        normalizer: EventNormalizer,
        deduplicator: Deduplicator,
        correlator: IdentityCorrelator,
        extractor: FeatureExtractor,
        scorer: AnomalyScorer,
        store: ActivityStore,
        dispatcher: AlertDispatcher,
        config: PipelineConfig = PipelineConfig(),
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.normalizer = normalizer
        self.deduplicator = deduplicator
        self.correlator = correlator
        self.extractor = extractor
        self.scorer = scorer
        self.store = store
        self.dispatcher = dispatcher
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logger or StructuredLogger()

    def process(self, raw: RawEvent) -> PipelineOutcome:
        try:
            activity = self.normalizer.normalize(raw)
        except MalformedEvent as exc:
            self.logger.warning(
                "EVENT_MALFORMED",
                platform=raw.platform,
                source_id=raw.source_id,
                source=raw.source_name,
                reason=exc.reason,
            )
            raise

        if self.deduplicator.admit(activity) == Admission.DUPLICATE:
            self.logger.emit("EVENT_DUPLICATE", activity_id=activity.activity_id, platform=activity.platform)
            return PipelineOutcome(OutcomeStatus.DUPLICATE, activity.activity_id)

        try:
            existing = self.store.get(activity.activity_id)
            if existing is not None:
                # Before correlation: a rejected event must not touch signatures
                if activity_content_hash(existing.activity) != activity_content_hash(activity):
                    raise ConflictingWrite(activity.activity_id)
                return self._replayed(existing)
            record = self._evaluate(activity)
            stored = self.store.append(record)
        except ConflictingWrite as exc:
            # Mark stays: the id is taken by different content
            self.logger.error("STORE_CONFLICT", activity_id=exc.activity_id, detail=exc.detail)
            raise
        except Exception:
            self.deduplicator.release(activity.activity_id)
            raise

        if not stored:
            # First write wins; report what is on record
            return self._replayed(self.store.get(activity.activity_id) or record)

        self.logger.emit(
            "ACTIVITY_STORED",
            activity_id=activity.activity_id,
            platform=activity.platform,
            signature_id=record.identity_signature_id,
            score=record.score.score,
            score_source=record.score.source.value,
        )
        alert = self.dispatcher.dispatch(activity, record.score)
        return PipelineOutcome(
            OutcomeStatus.ACCEPTED,
            activity.activity_id,
            signature_id=record.identity_signature_id,
            score=record.score,
            alert=alert,
        )

    def _replayed(self, record: ActivityRecord) -> PipelineOutcome:
        self.logger.emit("ACTIVITY_REPLAYED", activity_id=record.activity_id)
        return PipelineOutcome(
            OutcomeStatus.REPLAYED,
            record.activity_id,
            signature_id=record.identity_signature_id,
            score=record.score,
        )

    def _evaluate(self, activity) -> ActivityRecord:
        correlation = self.correlator.correlate(activity)
        signature = None
        history = []
        if correlation.resolved and correlation.signature_id:
            signature = self.correlator.resolve(correlation.signature_id)
            since = activity.occurred_at - timedelta(seconds=self.config.history_window_seconds)
            history = self.store.activities_for_signatures(
                self.correlator.lineage(correlation.signature_id),
                since=since,
                until=activity.occurred_at,
                limit=self.config.history_limit,
            )

        signature_id = signature.signature_id if signature else correlation.signature_id
        features = self.extractor.extract(activity, signature, history)
        score = self.scorer.score(features, activity.activity_id, signature_id)
        return ActivityRecord(
            activity=activity,
            identity_signature_id=signature_id,
            identity_resolved=signature is not None,
            features=features,
            score=score,
            stored_at=self.clock.now(),
        )
