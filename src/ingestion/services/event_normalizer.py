import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from src.core.errors import MalformedEvent
from src.core.time.clock import ensure_utc
from src.ingestion.domain.normalized_activity import (
    UNKNOWN_PLATFORM,
    IdentitySignals,
    NormalizedActivity,
)
from src.ingestion.domain.raw_event import RawEvent
from src.ingestion.services.platform_mappings import (
    GENERIC_MAPPING,
    PLATFORM_MAPPINGS,
    PlatformMapping,
)

_MISSING = object()


class EventNormalizer:
    """
    Pure service. Maps heterogeneous platform payloads onto NormalizedActivity.

    Unknown platform tags go through the generic mapping and come out with
    platform="unknown"; the original tag is kept in source_platform and still
    feeds the activity id so two unknown sources never collide.
    """

    def __init__(self, mappings: Optional[Dict[str, PlatformMapping]] = None):
        self.mappings = dict(PLATFORM_MAPPINGS if mappings is None else mappings)

    def normalize(self, event: RawEvent) -> NormalizedActivity:
        source_platform = (event.platform or "").strip().lower()
        mapping = self.mappings.get(source_platform, GENERIC_MAPPING)
        payload = event.payload if isinstance(event.payload, dict) else {}

        text = _first_scalar(payload, mapping.text)
        if not isinstance(text, str) or not text.strip():
            raise MalformedEvent("missing text content", platform=source_platform, source_id=event.source_id)

        raw_ts = _first_scalar(payload, mapping.timestamp)
        occurred_at = _parse_timestamp(raw_ts)
        if occurred_at is None:
            raise MalformedEvent("missing or unparsable timestamp", platform=source_platform, source_id=event.source_id)

        signals = IdentitySignals(
            ip_address=_clean(_first_scalar(payload, mapping.ip_address)),
            fingerprint=_clean(_first_scalar(payload, mapping.fingerprint)),
            handle=_clean_handle(_first_scalar(payload, mapping.handle)),
            chat_id=_clean(_first_scalar(payload, mapping.chat_id)),
        )

        source_id = str(event.source_id)
        platform = mapping.platform if mapping is not GENERIC_MAPPING else UNKNOWN_PLATFORM
        return NormalizedActivity(
            activity_id=activity_id_for(source_platform, source_id, text),
            platform=platform,
            occurred_at=occurred_at,
            text=text,
            signals=signals,
            source_platform=source_platform,
            source_id=source_id,
        )


def activity_id_for(platform: str, source_id: str, text: str) -> str:
    digest = hashlib.sha256()
    for part in (platform, source_id, text):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


def _resolve(payload: Dict[str, Any], path: str) -> Any:
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _first_scalar(payload: Dict[str, Any], paths: Iterable[str]) -> Any:
    for path in paths:
        value = _resolve(payload, path)
        if value is _MISSING or value is None or isinstance(value, bool):
            continue
        if isinstance(value, (str, int, float, datetime)):
            return value
    return None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _clean_handle(value: Any) -> Optional[str]:
    cleaned = _clean(value)
    if cleaned is None:
        return None
    return cleaned.lstrip("@").lower() or None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        seconds = float(value)
        # Millisecond epochs
        if seconds > 1e11:
            seconds = seconds / 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            return _parse_timestamp(float(candidate))
        except ValueError:
            pass
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(candidate))
        except ValueError:
            return None
    return None
