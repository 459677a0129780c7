from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict


@dataclass(frozen=True)
class RawEvent:
    """
    Unprocessed payload handed over by a platform collaborator.
    source_id is assigned by the source and is not unique across platforms.
    """
    platform: str
    source_id: str
    payload: Dict[str, Any]
    received_at: datetime
    source_name: str = field(default="", compare=False)
