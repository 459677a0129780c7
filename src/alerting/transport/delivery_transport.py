import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from src.core.errors import DeliveryFailure

logger = logging.getLogger(__name__)


class DeliveryTransport(ABC):
    @abstractmethod
    def deliver(self, subscriber_id: str, endpoint: str, payload: Dict[str, Any], timeout: float) -> None:
        """
        Returns on acknowledgement, raises DeliveryFailure otherwise.
        """
        pass


class HttpWebhookTransport(DeliveryTransport):
    """
    POSTs alert JSON to the subscriber endpoint. Any 2xx is an ack.
    The alert id travels as Idempotency-Key for subscriber-side dedup.
    """

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def deliver(self, subscriber_id: str, endpoint: str, payload: Dict[str, Any], timeout: float) -> None:
        headers = {"Idempotency-Key": str(payload.get("alertId", ""))}
        try:
            response = self.session.post(endpoint, json=payload, headers=headers, timeout=timeout)
        except requests.RequestException as e:
            logger.warning(f"Alert delivery to {subscriber_id} failed: {e}")
            raise DeliveryFailure(subscriber_id, f"unreachable: {e}") from e
        if not 200 <= response.status_code < 300:
            raise DeliveryFailure(subscriber_id, f"http_{response.status_code}")
