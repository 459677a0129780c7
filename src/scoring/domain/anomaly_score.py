from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ScoreSource(Enum):
    MODEL = "model"
    HEURISTIC_FALLBACK = "heuristic-fallback"


@dataclass(frozen=True)
class AnomalyScore:
    activity_id: str
    identity_signature_id: Optional[str]
    score: float
    source: ScoreSource
    computed_at: datetime
    model_version: Optional[str] = None
    fallback_reason: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score out of range: {self.score}")
