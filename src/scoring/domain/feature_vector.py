from dataclasses import dataclass
from typing import List, Tuple

FEATURE_NAMES: Tuple[str, ...] = (
    "message_frequency",
    "keyword_density",
    "platform_diversity",
    "time_of_day_entropy",
)


@dataclass(frozen=True)
class FeatureVector:
    """
    Fixed-length, ordered features for one activity in the context of its actor.
    """
    message_frequency: float
    keyword_density: float
    platform_diversity: float
    time_of_day_entropy: float
    keyword_hits: int = 0

    def as_list(self) -> List[float]:
        return [
            self.message_frequency,
            self.keyword_density,
            self.platform_diversity,
            self.time_of_day_entropy,
        ]

    @classmethod
    def from_list(cls, values: List[float]) -> "FeatureVector":
        if len(values) != len(FEATURE_NAMES):
            raise ValueError(f"expected {len(FEATURE_NAMES)} features, got {len(values)}")
        return cls(*[float(v) for v in values])
