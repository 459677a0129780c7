import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

_ALERT_NAMESPACE = uuid.UUID("5b0e6f0c-8f55-4c55-9a43-6d2f0b7a11a1")


class DeliveryState(Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead-lettered"


def alert_id_for(activity_id: str) -> str:
    return str(uuid.uuid5(_ALERT_NAMESPACE, activity_id))


@dataclass(frozen=True)
class Alert:
    """
    Anomaly alert for one activity. alert_id derives from activity_id so a
    reprocessed activity produces the same id for subscriber-side dedup.
    delivery_state is derived from the alert's per-subscriber deliveries.
    """
    alert_id: str
    activity_id: str
    identity_signature_id: Optional[str]
    platform: str
    score: float
    reason: str
    created_at: datetime
    delivery_state: DeliveryState = DeliveryState.PENDING
    dead_letter_reason: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "activityId": self.activity_id,
            "identitySignatureId": self.identity_signature_id,
            "platform": self.platform,
            "score": self.score,
            "reason": self.reason,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class AlertDelivery:
    """
    One fan-out target of an alert. Mutable queue entry:
    pending -> delivered | dead-lettered.
    """
    delivery_id: str
    alert: Alert
    subscriber_id: str
    endpoint: str
    state: DeliveryState
    available_at: datetime
    created_at: datetime
    updated_at: datetime
    attempt_count: int = 0
    max_attempts: int = 5
    leased_by: Optional[str] = None
    lease_until: Optional[datetime] = None
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    replay_count: int = 0

    @classmethod
    def new(cls, alert: Alert, subscriber_id: str, endpoint: str, now: datetime, max_attempts: int = 5) -> "AlertDelivery":
        return cls(
            delivery_id=str(uuid.uuid4()),
            alert=alert,
            subscriber_id=subscriber_id,
            endpoint=endpoint,
            state=DeliveryState.PENDING,
            available_at=now,
            created_at=now,
            updated_at=now,
            max_attempts=max_attempts,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state != DeliveryState.PENDING

    def snapshot(self) -> "AlertDelivery":
        return AlertDelivery(
            delivery_id=self.delivery_id,
            alert=self.alert,
            subscriber_id=self.subscriber_id,
            endpoint=self.endpoint,
            state=self.state,
            available_at=self.available_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
            attempt_count=self.attempt_count,
            max_attempts=self.max_attempts,
            leased_by=self.leased_by,
            lease_until=self.lease_until,
            last_error=self.last_error,
            delivered_at=self.delivered_at,
            replay_count=self.replay_count,
        )
