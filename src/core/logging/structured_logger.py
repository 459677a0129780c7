import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class StructuredLogger:
    """
    JSON-lines logger for ingestion, scoring and delivery paths.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, **bound: Any):
        self._logger = logger or logging.getLogger("pipeline")
        self._bound: Dict[str, Any] = dict(bound)

    def bind(self, **fields: Any) -> "StructuredLogger":
        merged = dict(self._bound)
        merged.update(fields)
        return StructuredLogger(self._logger, **merged)

    def emit(self, event_type: str, level: int = logging.INFO, **fields: Any) -> None:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
        }
        payload.update(self._bound)
        payload.update(fields)
        self._logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))

    def warning(self, event_type: str, **fields: Any) -> None:
        self.emit(event_type, level=logging.WARNING, **fields)

    def error(self, event_type: str, **fields: Any) -> None:
        self.emit(event_type, level=logging.ERROR, **fields)
