from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Optional


@dataclass(frozen=True)
class Subscription:
    subscriber_id: str
    delivery_endpoint: str
    min_score: float = 0.0
    platforms: FrozenSet[str] = field(default_factory=frozenset)
    created_at: Optional[datetime] = None

    def matches(self, platform: str, score: float) -> bool:
        return score >= self.min_score and platform in self.platforms
