from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from src.correlation.domain.identity_signature import IdentitySignature
from src.store.activity_store import ActivityStore
from src.store.domain.activity_record import ActivityQuery, ActivityRecord

UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ReportRow:
    record: ActivityRecord
    signature: Optional[IdentitySignature]

    def to_dict(self) -> Dict[str, Any]:
        activity = self.record.activity
        score = self.record.score
        return {
            "activity": {
                "activityId": activity.activity_id,
                "platform": activity.platform,
                "sourcePlatform": activity.source_platform,
                "occurredAt": activity.occurred_at.isoformat(),
                "text": activity.text,
                "rawIdentitySignals": activity.signals.as_dict(),
            },
            "score": {
                "score": score.score,
                "source": score.source.value,
                "computedAt": score.computed_at.isoformat(),
                "modelVersion": score.model_version,
            },
            "identity": signature_to_dict(self.signature) if self.signature else UNRESOLVED,
        }


def signature_to_dict(signature: IdentitySignature) -> Dict[str, Any]:
    return {
        "signatureId": signature.signature_id,
        "version": signature.version,
        "confidence": signature.confidence,
        "signals": sorted(key.as_str() for key in signature.signals),
        "matchedTypes": sorted(t.value for t in signature.matched_types),
        "mergedFrom": list(signature.merged_from),
        "mergedInto": signature.merged_into,
        "updatedAt": signature.updated_at.isoformat(),
    }


class ReportingService:
    """
    Read side for reporting and authority sharing. Access control sits in
    front of this service.
    """

    def __init__(self, store: ActivityStore):
        self.store = store

    def query(self, query: ActivityQuery) -> List[ReportRow]:
        if query.signature_ids:
            query = ActivityQuery(
                start=query.start,
                end=query.end,
                platform=query.platform,
                min_score=query.min_score,
                signature_ids=frozenset(self._expand(query.signature_ids)),
                limit=query.limit,
            )
        return [self._row(record) for record in self.store.query(query)]

    def get(self, activity_id: str) -> Optional[ReportRow]:
        record = self.store.get(activity_id)
        return self._row(record) if record else None

    def signature(self, signature_id: str) -> Optional[IdentitySignature]:
        return self.store.resolve_signature(signature_id)

    def _row(self, record: ActivityRecord) -> ReportRow:
        signature = None
        if record.identity_resolved and record.identity_signature_id:
            signature = self.store.resolve_signature(record.identity_signature_id)
        return ReportRow(record=record, signature=signature)

    def _expand(self, signature_ids) -> set:
        # Records keep the signature id they were written with; include every
        # id that has since been merged into the requested ones.
        wanted = set(signature_ids)
        heads = {self.store.resolve_signature(s) for s in wanted}
        head_ids = {h.signature_id for h in heads if h is not None}
        for signature_id in {v.signature_id for v in self.store.signature_versions()} - wanted:
            head = self.store.resolve_signature(signature_id)
            if head is not None and head.signature_id in head_ids:
                wanted.add(signature_id)
        return wanted
