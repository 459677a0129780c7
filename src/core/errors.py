from typing import Optional


class PipelineError(Exception):
    """Base class for activity pipeline errors."""
    pass


class MalformedEvent(PipelineError):
    """Raw event could not be mapped to a normalized activity. Never retried."""

    def __init__(self, reason: str, platform: Optional[str] = None, source_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.platform = platform
        self.source_id = source_id


class ConflictingWrite(PipelineError):
    """An activity id was re-written with different content."""

    def __init__(self, activity_id: str, detail: str = "content differs from stored record"):
        super().__init__(f"Conflicting write for activity {activity_id}: {detail}")
        self.activity_id = activity_id
        self.detail = detail


class ScorerUnavailable(PipelineError):
    """External scorer did not produce a usable answer."""

    def __init__(self, reason: str, transient: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.transient = transient


class DeliveryFailure(PipelineError):
    """Subscriber endpoint did not acknowledge an alert."""

    def __init__(self, subscriber_id: str, reason: str):
        super().__init__(f"Delivery to {subscriber_id} failed: {reason}")
        self.subscriber_id = subscriber_id
        self.reason = reason
