import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional, Tuple

from src.correlation.domain.identity_signature import IdentitySignature
from src.ingestion.domain.normalized_activity import NormalizedActivity
from src.scoring.domain.feature_vector import FeatureVector

_HOURS = 24


@dataclass(frozen=True)
class FeatureConfig:
    window_seconds: int = 3600
    suspicious_terms: Tuple[str, ...] = field(default_factory=tuple)
    max_frequency: float = 1000.0


class FeatureExtractor:
    """
    Deterministic feature derivation. The history snapshot is read-only here;
    the activity itself is counted even if it is not in the snapshot yet.
    """

    def __init__(self, config: FeatureConfig = FeatureConfig()):
        self.config = config
        self._terms = tuple(sorted({t.strip().lower() for t in config.suspicious_terms if t.strip()}))

    def extract(
        self,
        activity: NormalizedActivity,
        signature: Optional[IdentitySignature],
        recent_history: Iterable[NormalizedActivity],
    ) -> FeatureVector:
        history = [a for a in recent_history if a.activity_id != activity.activity_id]
        if signature is None:
            # Unresolved identity: no actor to aggregate over
            history = []
        window = [activity] + history

        cutoff = activity.occurred_at - timedelta(seconds=self.config.window_seconds)
        in_window = [a for a in window if cutoff <= a.occurred_at <= activity.occurred_at]
        frequency = min(float(len(in_window)), self.config.max_frequency)

        hits, density = self.keyword_density(activity.text)
        platforms = {a.platform for a in window}

        return FeatureVector(
            message_frequency=frequency,
            keyword_density=density,
            platform_diversity=float(len(platforms)),
            time_of_day_entropy=self._hour_entropy(window),
            keyword_hits=hits,
        )

    def keyword_density(self, text: str) -> Tuple[int, float]:
        tokens = text.lower().split()
        if not tokens or not self._terms:
            return 0, 0.0
        normalized = " " + " ".join(_strip_punctuation(t) for t in tokens) + " "
        hits = 0
        for term in self._terms:
            hits += normalized.count(" " + term + " ")
        return hits, min(1.0, hits / float(len(tokens)))

    def _hour_entropy(self, activities: List[NormalizedActivity]) -> float:
        counts = Counter(a.occurred_at.hour for a in activities)
        total = float(sum(counts.values()))
        if total <= 1:
            return 0.0
        entropy = 0.0
        for count in counts.values():
            p = count / total
            entropy -= p * math.log2(p)
        return entropy / math.log2(_HOURS)


def _strip_punctuation(token: str) -> str:
    return token.strip(".,!?;:\"'()[]{}")
