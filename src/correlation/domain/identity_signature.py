from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional, Tuple


class SignalType(Enum):
    FINGERPRINT = "fingerprint"
    IP = "ip"
    HANDLE = "handle"


# Tie-break order when several signals point at different signatures
SIGNAL_PRIORITY: Tuple[SignalType, ...] = (SignalType.FINGERPRINT, SignalType.IP, SignalType.HANDLE)


@dataclass(frozen=True)
class SignalKey:
    signal_type: SignalType
    value: str

    @property
    def priority(self) -> Tuple[int, str]:
        return (SIGNAL_PRIORITY.index(self.signal_type), self.value)

    def as_str(self) -> str:
        return f"{self.signal_type.value}:{self.value}"

    @classmethod
    def parse(cls, raw: str) -> "SignalKey":
        kind, _, value = raw.partition(":")
        return cls(SignalType(kind), value)


@dataclass(frozen=True)
class IdentitySignature:
    """
    One version of a probable-actor cluster.
    Versions are append-only: a merge produces version + 1 and the previous
    version stays in history. A signature absorbed by a merge gets a final
    version with merged_into pointing at the survivor.
    """
    signature_id: str
    version: int
    signals: FrozenSet[SignalKey]
    matched_types: FrozenSet[SignalType]
    confidence: float
    created_at: datetime
    updated_at: datetime
    merged_from: Tuple[str, ...] = ()
    merged_into: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence out of range: {self.confidence}")

    @property
    def is_head(self) -> bool:
        return self.merged_into is None

    def signal_values(self, signal_type: SignalType) -> FrozenSet[str]:
        return frozenset(key.value for key in self.signals if key.signal_type == signal_type)


@dataclass(frozen=True)
class CorrelationResult:
    signature_id: Optional[str]
    resolved: bool
    signature: Optional[IdentitySignature] = None
    created: bool = False
    merged: bool = False
