from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

UNKNOWN_PLATFORM = "unknown"


@dataclass(frozen=True)
class IdentitySignals:
    ip_address: Optional[str] = None
    fingerprint: Optional[str] = None
    handle: Optional[str] = None
    chat_id: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.ip_address or self.fingerprint or self.handle)

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "ip_address": self.ip_address,
            "fingerprint": self.fingerprint,
            "handle": self.handle,
            "chat_id": self.chat_id,
        }


@dataclass(frozen=True)
class NormalizedActivity:
    """
    Canonical, deterministic representation of one platform event.
    activity_id is a content hash of (source platform tag, source id, text).
    """
    activity_id: str
    platform: str
    occurred_at: datetime
    text: str
    signals: IdentitySignals = field(default_factory=IdentitySignals)
    source_platform: str = ""
    source_id: str = ""

    def content_key(self) -> Tuple:
        return (
            self.activity_id,
            self.platform,
            self.occurred_at.isoformat(),
            self.text,
            tuple(sorted((k, v or "") for k, v in self.signals.as_dict().items())),
            self.source_platform,
            self.source_id,
        )
