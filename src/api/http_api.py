from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query

from src.alerting.domain.alert import AlertDelivery
from src.alerting.domain.subscription import Subscription
from src.core.errors import ConflictingWrite, MalformedEvent
from src.core.time.clock import ensure_utc
from src.ingestion.domain.raw_event import RawEvent
from src.pipeline.services.activity_pipeline import PipelineOutcome
from src.runtime.pipeline_runtime import PipelineRuntime
from src.store.domain.activity_record import ActivityQuery
from src.store.services.reporting_service import signature_to_dict

_SOURCE_ID_KEYS = ("source_id", "id", "message_id", "update_id")


def _source_id(payload: Dict[str, Any], explicit: Optional[str]) -> str:
    if explicit:
        return explicit
    for key in _SOURCE_ID_KEYS:
        value = payload.get(key)
        if value is not None and not isinstance(value, (dict, list)):
            return str(value)
    return ""


def _outcome_to_dict(outcome: PipelineOutcome) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "status": outcome.status.value,
        "activityId": outcome.activity_id,
        "identitySignatureId": outcome.signature_id,
    }
    if outcome.score is not None:
        out["score"] = outcome.score.score
        out["scoreSource"] = outcome.score.source.value
    if outcome.alert is not None:
        out["alertId"] = outcome.alert.alert_id
        out["alertState"] = outcome.alert.delivery_state.value
    return out


def _subscription_to_dict(subscription: Subscription) -> Dict[str, Any]:
    return {
        "subscriberId": subscription.subscriber_id,
        "deliveryEndpoint": subscription.delivery_endpoint,
        "minScore": subscription.min_score,
        "platforms": sorted(subscription.platforms),
    }


def _delivery_to_dict(delivery: AlertDelivery) -> Dict[str, Any]:
    return {
        "deliveryId": delivery.delivery_id,
        "alertId": delivery.alert.alert_id,
        "activityId": delivery.alert.activity_id,
        "subscriberId": delivery.subscriber_id,
        "state": delivery.state.value,
        "attempts": delivery.attempt_count,
        "lastError": delivery.last_error,
        "replayCount": delivery.replay_count,
        "updatedAt": delivery.updated_at.isoformat(),
    }


def build_pipeline_router(runtime: PipelineRuntime) -> APIRouter:
    router = APIRouter(prefix="/v1")

    @router.post("/ingest/{platform}")
    def ingest(platform: str, payload: Dict[str, Any], source_id: Optional[str] = None):
        raw = RawEvent(
            platform=platform,
            source_id=_source_id(payload, source_id),
            payload=payload,
            received_at=runtime.pipeline.clock.now(),
            source_name="http",
        )
        try:
            outcome = runtime.pipeline.process(raw)
        except MalformedEvent as exc:
            raise HTTPException(status_code=422, detail=exc.reason)
        except ConflictingWrite as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return _outcome_to_dict(outcome)

    @router.post("/sources/{source}/events", status_code=202)
    def enqueue(source: str, payload: Dict[str, Any], platform: Optional[str] = None, source_id: Optional[str] = None):
        worker = runtime.source(source)
        if worker is None:
            raise HTTPException(status_code=404, detail="Source not found")
        raw = RawEvent(
            platform=platform or source,
            source_id=_source_id(payload, source_id),
            payload=payload,
            received_at=runtime.pipeline.clock.now(),
            source_name=source,
        )
        if not worker.offer(raw, timeout=0.0):
            raise HTTPException(status_code=503, detail="Source queue full")
        return {"status": "queued", "backlog": worker.backlog()}

    @router.post("/subscriptions", status_code=201)
    def register_subscription(payload: Dict[str, Any]):
        try:
            subscription = runtime.registry.register(
                delivery_endpoint=str(payload.get("deliveryEndpoint") or ""),
                min_score=float(payload.get("minScore", 0.0)),
                platforms=payload.get("platforms") or [],
            )
        except (AttributeError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return _subscription_to_dict(subscription)

    @router.get("/subscriptions")
    def list_subscriptions():
        return {"items": [_subscription_to_dict(s) for s in runtime.registry.list()]}

    @router.delete("/subscriptions/{subscriber_id}")
    def remove_subscription(subscriber_id: str):
        if not runtime.dispatcher.remove_subscription(subscriber_id):
            raise HTTPException(status_code=404, detail="Subscription not found")
        return {"status": "removed", "subscriberId": subscriber_id}

    @router.get("/activities")
    def query_activities(
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        platform: Optional[str] = None,
        min_score: Optional[float] = None,
        signature_id: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
    ):
        query = ActivityQuery(
            start=ensure_utc(start) if start else None,
            end=ensure_utc(end) if end else None,
            platform=platform.lower() if platform else None,
            min_score=min_score,
            signature_ids=frozenset([signature_id]) if signature_id else None,
            limit=limit,
        )
        return {"items": [row.to_dict() for row in runtime.reporting.query(query)]}

    @router.get("/activities/{activity_id}")
    def get_activity(activity_id: str):
        row = runtime.reporting.get(activity_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Activity not found")
        return row.to_dict()

    @router.get("/signatures/{signature_id}")
    def get_signature(signature_id: str):
        signature = runtime.reporting.signature(signature_id)
        if signature is None:
            raise HTTPException(status_code=404, detail="Signature not found")
        return signature_to_dict(signature)

    @router.get("/alerts/dead-letter")
    def dead_letters(limit: int = Query(100, ge=1, le=1000)):
        return {"items": [_delivery_to_dict(d) for d in runtime.dispatcher.dead_letters(limit=limit)]}

    @router.post("/alerts/deliveries/{delivery_id}/replay")
    def replay_delivery(delivery_id: str):
        replayed = runtime.dispatcher.replay_dead_letter(delivery_id)
        if replayed is None:
            raise HTTPException(status_code=404, detail="Dead-lettered delivery not found")
        return _delivery_to_dict(replayed)

    return router


def create_app(runtime: PipelineRuntime) -> FastAPI:
    app = FastAPI(title="activity-sentinel")
    app.include_router(build_pipeline_router(runtime))
    app.state.runtime = runtime
    return app
