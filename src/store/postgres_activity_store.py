from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Engine

from src.alerting.domain.alert import Alert, AlertDelivery, DeliveryState
from src.core.errors import ConflictingWrite
from src.correlation.domain.identity_signature import IdentitySignature
from src.ingestion.domain.normalized_activity import NormalizedActivity
from src.store.activity_store import ActivityStore, activity_content_hash
from src.store.domain.activity_record import ActivityQuery, ActivityRecord
from src.store.payload_codec import decode_payload, encode_payload


class PostgresActivityStore(ActivityStore):
    def __init__(self, engine: Engine):
        self.engine = engine
        self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresActivityStore":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS activity_records (
                        activity_id TEXT PRIMARY KEY,
                        platform TEXT NOT NULL,
                        occurred_at TIMESTAMPTZ NOT NULL,
                        signature_id TEXT NULL,
                        identity_resolved BOOLEAN NOT NULL,
                        score DOUBLE PRECISION NOT NULL,
                        score_source TEXT NOT NULL,
                        content_hash TEXT NOT NULL,
                        stored_at TIMESTAMPTZ NOT NULL,
                        payload BYTEA NOT NULL
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE INDEX IF NOT EXISTS ix_activity_records_platform_time
                    ON activity_records (platform, occurred_at DESC)
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE INDEX IF NOT EXISTS ix_activity_records_signature_time
                    ON activity_records (signature_id, occurred_at DESC)
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS identity_signature_versions (
                        signature_id TEXT NOT NULL,
                        version INTEGER NOT NULL,
                        merged_into TEXT NULL,
                        confidence DOUBLE PRECISION NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL,
                        payload BYTEA NOT NULL,
                        PRIMARY KEY (signature_id, version)
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS alerts (
                        alert_id TEXT PRIMARY KEY,
                        activity_id TEXT NOT NULL,
                        delivery_state TEXT NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL,
                        payload BYTEA NOT NULL
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS alert_deliveries (
                        delivery_id TEXT PRIMARY KEY,
                        alert_id TEXT NOT NULL,
                        subscriber_id TEXT NOT NULL,
                        state TEXT NOT NULL,
                        attempt_count INTEGER NOT NULL,
                        replay_count INTEGER NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL,
                        payload BYTEA NOT NULL
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE INDEX IF NOT EXISTS ix_alert_deliveries_state
                    ON alert_deliveries (state, updated_at DESC)
                    """
                )
            )

    def append(self, record: ActivityRecord) -> bool:
        content_hash = activity_content_hash(record.activity)
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    INSERT INTO activity_records (
                        activity_id, platform, occurred_at, signature_id, identity_resolved,
                        score, score_source, content_hash, stored_at, payload
                    ) VALUES (
                        :activity_id, :platform, :occurred_at, :signature_id, :identity_resolved,
                        :score, :score_source, :content_hash, :stored_at, :payload
                    )
                    ON CONFLICT (activity_id) DO NOTHING
                    """
                ),
                {
                    "activity_id": record.activity_id,
                    "platform": record.activity.platform,
                    "occurred_at": record.activity.occurred_at,
                    "signature_id": record.identity_signature_id,
                    "identity_resolved": record.identity_resolved,
                    "score": record.score.score,
                    "score_source": record.score.source.value,
                    "content_hash": content_hash,
                    "stored_at": record.stored_at,
                    "payload": encode_payload(record),
                },
            )
            if result.rowcount:
                return True
            row = conn.execute(
                text("SELECT content_hash FROM activity_records WHERE activity_id=:activity_id"),
                {"activity_id": record.activity_id},
            ).first()
        if row is not None and row.content_hash != content_hash:
            raise ConflictingWrite(record.activity_id)
        return False

    def get(self, activity_id: str) -> Optional[ActivityRecord]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text("SELECT payload FROM activity_records WHERE activity_id=:activity_id"),
                {"activity_id": activity_id},
            ).first()
        return decode_payload(row.payload) if row else None

    def query(self, query: ActivityQuery) -> List[ActivityRecord]:
        clauses = []
        params: Dict[str, Any] = {"limit": max(0, int(query.limit))}
        if query.start is not None:
            clauses.append("occurred_at >= :start")
            params["start"] = query.start
        if query.end is not None:
            clauses.append("occurred_at < :end")
            params["end"] = query.end
        if query.platform is not None:
            clauses.append("platform = :platform")
            params["platform"] = query.platform
        if query.min_score is not None:
            clauses.append("score >= :min_score")
            params["min_score"] = query.min_score
        statement_sql = "SELECT payload FROM activity_records"
        if query.signature_ids is not None:
            clauses.append("signature_id IN :signature_ids")
            params["signature_ids"] = list(query.signature_ids) or [""]
        if clauses:
            statement_sql += " WHERE " + " AND ".join(clauses)
        statement_sql += " ORDER BY occurred_at ASC, activity_id ASC LIMIT :limit"
        statement = text(statement_sql)
        if query.signature_ids is not None:
            statement = statement.bindparams(bindparam("signature_ids", expanding=True))
        with self.engine.begin() as conn:
            rows = conn.execute(statement, params).fetchall()
        return [decode_payload(row.payload) for row in rows]

    def activities_for_signatures(
        self, signature_ids: Iterable[str], since: datetime, until: datetime, limit: int = 500
    ) -> List[NormalizedActivity]:
        wanted = list(set(signature_ids))
        if not wanted:
            return []
        statement = text(
            """
            SELECT payload
            FROM activity_records
            WHERE signature_id IN :signature_ids
              AND occurred_at >= :since AND occurred_at <= :until
            ORDER BY occurred_at DESC
            LIMIT :limit
            """
        ).bindparams(bindparam("signature_ids", expanding=True))
        with self.engine.begin() as conn:
            rows = conn.execute(
                statement,
                {"signature_ids": wanted, "since": since, "until": until, "limit": limit},
            ).fetchall()
        return [decode_payload(row.payload).activity for row in rows]

    def append_signature(self, signature: IdentitySignature) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO identity_signature_versions (
                        signature_id, version, merged_into, confidence, updated_at, payload
                    ) VALUES (
                        :signature_id, :version, :merged_into, :confidence, :updated_at, :payload
                    )
                    ON CONFLICT (signature_id, version) DO NOTHING
                    """
                ),
                {
                    "signature_id": signature.signature_id,
                    "version": signature.version,
                    "merged_into": signature.merged_into,
                    "confidence": signature.confidence,
                    "updated_at": signature.updated_at,
                    "payload": encode_payload(signature),
                },
            )

    def signature_versions(self, signature_id: Optional[str] = None) -> List[IdentitySignature]:
        with self.engine.begin() as conn:
            if signature_id is None:
                rows = conn.execute(
                    text("SELECT payload FROM identity_signature_versions ORDER BY signature_id, version")
                ).fetchall()
            else:
                rows = conn.execute(
                    text(
                        """
                        SELECT payload FROM identity_signature_versions
                        WHERE signature_id=:signature_id
                        ORDER BY version
                        """
                    ),
                    {"signature_id": signature_id},
                ).fetchall()
        return [decode_payload(row.payload) for row in rows]

    def save_alert(self, alert: Alert) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO alerts (alert_id, activity_id, delivery_state, created_at, payload)
                    VALUES (:alert_id, :activity_id, :delivery_state, :created_at, :payload)
                    ON CONFLICT (alert_id) DO UPDATE SET
                      delivery_state=EXCLUDED.delivery_state,
                      payload=EXCLUDED.payload
                    """
                ),
                {
                    "alert_id": alert.alert_id,
                    "activity_id": alert.activity_id,
                    "delivery_state": alert.delivery_state.value,
                    "created_at": alert.created_at,
                    "payload": encode_payload(alert),
                },
            )

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text("SELECT payload FROM alerts WHERE alert_id=:alert_id"),
                {"alert_id": alert_id},
            ).first()
        return decode_payload(row.payload) if row else None

    def save_delivery(self, delivery: AlertDelivery) -> None:
        # Later replay cycles and later attempts win; stale updates are ignored
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO alert_deliveries (
                        delivery_id, alert_id, subscriber_id, state, attempt_count,
                        replay_count, updated_at, payload
                    ) VALUES (
                        :delivery_id, :alert_id, :subscriber_id, :state, :attempt_count,
                        :replay_count, :updated_at, :payload
                    )
                    ON CONFLICT (delivery_id) DO UPDATE SET
                      state=EXCLUDED.state,
                      attempt_count=EXCLUDED.attempt_count,
                      replay_count=EXCLUDED.replay_count,
                      updated_at=EXCLUDED.updated_at,
                      payload=EXCLUDED.payload
                    WHERE (alert_deliveries.replay_count, alert_deliveries.updated_at, alert_deliveries.attempt_count)
                       <= (EXCLUDED.replay_count, EXCLUDED.updated_at, EXCLUDED.attempt_count)
                    """
                ),
                {
                    "delivery_id": delivery.delivery_id,
                    "alert_id": delivery.alert.alert_id,
                    "subscriber_id": delivery.subscriber_id,
                    "state": delivery.state.value,
                    "attempt_count": delivery.attempt_count,
                    "replay_count": delivery.replay_count,
                    "updated_at": delivery.updated_at,
                    "payload": encode_payload(delivery.snapshot()),
                },
            )

    def deliveries_for_alert(self, alert_id: str) -> List[AlertDelivery]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT payload FROM alert_deliveries
                    WHERE alert_id=:alert_id
                    ORDER BY delivery_id
                    """
                ),
                {"alert_id": alert_id},
            ).fetchall()
        return [decode_payload(row.payload) for row in rows]

    def list_deliveries(self, state: Optional[DeliveryState] = None, limit: int = 100) -> List[AlertDelivery]:
        with self.engine.begin() as conn:
            if state is None:
                rows = conn.execute(
                    text("SELECT payload FROM alert_deliveries ORDER BY updated_at DESC LIMIT :limit"),
                    {"limit": limit},
                ).fetchall()
            else:
                rows = conn.execute(
                    text(
                        """
                        SELECT payload FROM alert_deliveries
                        WHERE state=:state
                        ORDER BY updated_at DESC
                        LIMIT :limit
                        """
                    ),
                    {"state": state.value, "limit": limit},
                ).fetchall()
        return [decode_payload(row.payload) for row in rows]

    def get_delivery(self, delivery_id: str) -> Optional[AlertDelivery]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text("SELECT payload FROM alert_deliveries WHERE delivery_id=:delivery_id"),
                {"delivery_id": delivery_id},
            ).first()
        return decode_payload(row.payload) if row else None

    def pending_deliveries(self) -> List[AlertDelivery]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT payload FROM alert_deliveries
                    WHERE state=:state
                    ORDER BY updated_at ASC, delivery_id ASC
                    """
                ),
                {"state": DeliveryState.PENDING.value},
            ).fetchall()
        return [decode_payload(row.payload) for row in rows]
