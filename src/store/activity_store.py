import hashlib
import json
from abc import ABC, abstractmethod
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from src.alerting.domain.alert import Alert, AlertDelivery, DeliveryState
from src.core.errors import ConflictingWrite
from src.correlation.domain.identity_signature import IdentitySignature
from src.ingestion.domain.normalized_activity import NormalizedActivity
from src.store.domain.activity_record import ActivityQuery, ActivityRecord

_MAX_REDIRECTS = 64


def activity_content_hash(activity: NormalizedActivity) -> str:
    encoded = json.dumps(list(activity.content_key()), sort_keys=True, default=str, ensure_ascii=True)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class ActivityStore(ABC):
    """
    Append-only record of activities, signature versions, scores and alerts.

    append() is idempotent on activity_id: identical content is a no-op that
    returns False, different content raises ConflictingWrite. Score and
    correlation of the first write are kept.
    """

    @abstractmethod
    def append(self, record: ActivityRecord) -> bool:
        pass

    @abstractmethod
    def get(self, activity_id: str) -> Optional[ActivityRecord]:
        pass

    @abstractmethod
    def query(self, query: ActivityQuery) -> List[ActivityRecord]:
        pass

    @abstractmethod
    def activities_for_signatures(
        self, signature_ids: Iterable[str], since: datetime, until: datetime, limit: int = 500
    ) -> List[NormalizedActivity]:
        pass

    @abstractmethod
    def append_signature(self, signature: IdentitySignature) -> None:
        pass

    @abstractmethod
    def signature_versions(self, signature_id: Optional[str] = None) -> List[IdentitySignature]:
        pass

    @abstractmethod
    def save_alert(self, alert: Alert) -> None:
        pass

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[Alert]:
        pass

    @abstractmethod
    def save_delivery(self, delivery: AlertDelivery) -> None:
        pass

    @abstractmethod
    def deliveries_for_alert(self, alert_id: str) -> List[AlertDelivery]:
        pass

    @abstractmethod
    def get_delivery(self, delivery_id: str) -> Optional[AlertDelivery]:
        pass

    @abstractmethod
    def list_deliveries(self, state: Optional[DeliveryState] = None, limit: int = 100) -> List[AlertDelivery]:
        pass

    @abstractmethod
    def pending_deliveries(self) -> List[AlertDelivery]:
        pass

    def resolve_signature(self, signature_id: str) -> Optional[IdentitySignature]:
        current = signature_id
        for _ in range(_MAX_REDIRECTS):
            versions = self.signature_versions(current)
            if not versions:
                return None
            head = versions[-1]
            if head.merged_into is None:
                return head
            current = head.merged_into
        return None


class InMemoryActivityStore(ActivityStore):
    def __init__(self):
        self._records: Dict[str, ActivityRecord] = {}
        self._hashes: Dict[str, str] = {}
        self._signatures: Dict[str, Dict[int, IdentitySignature]] = {}
        self._alerts: Dict[str, Alert] = {}
        self._deliveries: Dict[str, AlertDelivery] = {}
        self._lock = Lock()

    def append(self, record: ActivityRecord) -> bool:
        content_hash = activity_content_hash(record.activity)
        with self._lock:
            existing = self._hashes.get(record.activity_id)
            if existing is not None:
                if existing != content_hash:
                    raise ConflictingWrite(record.activity_id)
                return False
            self._records[record.activity_id] = record
            self._hashes[record.activity_id] = content_hash
            return True

    def get(self, activity_id: str) -> Optional[ActivityRecord]:
        with self._lock:
            return self._records.get(activity_id)

    def query(self, query: ActivityQuery) -> List[ActivityRecord]:
        with self._lock:
            matched = [r for r in self._records.values() if query.matches(r)]
        matched.sort(key=lambda r: (r.activity.occurred_at, r.activity_id))
        return matched[: max(0, int(query.limit))]

    def activities_for_signatures(
        self, signature_ids: Iterable[str], since: datetime, until: datetime, limit: int = 500
    ) -> List[NormalizedActivity]:
        wanted = set(signature_ids)
        if not wanted:
            return []
        with self._lock:
            matched = [
                r.activity
                for r in self._records.values()
                if r.identity_signature_id in wanted and since <= r.activity.occurred_at <= until
            ]
        matched.sort(key=lambda a: (a.occurred_at, a.activity_id), reverse=True)
        return matched[:limit]

    def append_signature(self, signature: IdentitySignature) -> None:
        with self._lock:
            versions = self._signatures.setdefault(signature.signature_id, {})
            versions.setdefault(signature.version, signature)

    def signature_versions(self, signature_id: Optional[str] = None) -> List[IdentitySignature]:
        with self._lock:
            if signature_id is not None:
                versions = self._signatures.get(signature_id, {})
                return [versions[v] for v in sorted(versions)]
            out: List[IdentitySignature] = []
            for sig_id in sorted(self._signatures):
                versions = self._signatures[sig_id]
                out.extend(versions[v] for v in sorted(versions))
            return out

    def save_alert(self, alert: Alert) -> None:
        with self._lock:
            self._alerts[alert.alert_id] = alert

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def save_delivery(self, delivery: AlertDelivery) -> None:
        with self._lock:
            current = self._deliveries.get(delivery.delivery_id)
            if current is not None and _is_stale(current, delivery):
                return
            self._deliveries[delivery.delivery_id] = delivery.snapshot()

    def deliveries_for_alert(self, alert_id: str) -> List[AlertDelivery]:
        with self._lock:
            return sorted(
                (d for d in self._deliveries.values() if d.alert.alert_id == alert_id),
                key=lambda d: (d.created_at, d.delivery_id),
            )

    def list_deliveries(self, state: Optional[DeliveryState] = None, limit: int = 100) -> List[AlertDelivery]:
        with self._lock:
            items = [d for d in self._deliveries.values() if state is None or d.state == state]
        items.sort(key=lambda d: d.updated_at, reverse=True)
        return items[:limit]

    def get_delivery(self, delivery_id: str) -> Optional[AlertDelivery]:
        with self._lock:
            delivery = self._deliveries.get(delivery_id)
            return delivery.snapshot() if delivery else None

    def pending_deliveries(self) -> List[AlertDelivery]:
        with self._lock:
            items = [d.snapshot() for d in self._deliveries.values() if d.state == DeliveryState.PENDING]
        items.sort(key=lambda d: (d.created_at, d.delivery_id))
        return items


def _is_stale(current: AlertDelivery, incoming: AlertDelivery) -> bool:
    return _delivery_order(incoming) < _delivery_order(current)


def _delivery_order(delivery: AlertDelivery) -> Tuple:
    return (delivery.replay_count, delivery.updated_at, delivery.attempt_count, delivery.is_terminal)
