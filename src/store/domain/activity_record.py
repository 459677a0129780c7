from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Optional

from src.ingestion.domain.normalized_activity import NormalizedActivity
from src.scoring.domain.anomaly_score import AnomalyScore
from src.scoring.domain.feature_vector import FeatureVector


@dataclass(frozen=True)
class ActivityRecord:
    """
    Everything the pipeline produced for one activity, written atomically.
    identity_resolved=False is the recorded "identity: unresolved" state.
    """
    activity: NormalizedActivity
    identity_signature_id: Optional[str]
    identity_resolved: bool
    features: FeatureVector
    score: AnomalyScore
    stored_at: datetime

    @property
    def activity_id(self) -> str:
        return self.activity.activity_id


@dataclass(frozen=True)
class ActivityQuery:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    platform: Optional[str] = None
    min_score: Optional[float] = None
    signature_ids: Optional[FrozenSet[str]] = None
    limit: int = 100

    def matches(self, record: ActivityRecord) -> bool:
        occurred_at = record.activity.occurred_at
        if self.start is not None and occurred_at < self.start:
            return False
        if self.end is not None and occurred_at >= self.end:
            return False
        if self.platform is not None and record.activity.platform != self.platform:
            return False
        if self.min_score is not None and record.score.score < self.min_score:
            return False
        if self.signature_ids is not None and record.identity_signature_id not in self.signature_ids:
            return False
        return True
