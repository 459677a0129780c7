import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

from src.core.errors import ScorerUnavailable
from src.scoring.domain.feature_vector import FEATURE_NAMES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScorerResponse:
    anomaly_probability: float
    model_version: str


class ScorerClient(ABC):
    @abstractmethod
    def predict(self, activity_id: str, features: List[float], timeout: float) -> ScorerResponse:
        """
        Raises ScorerUnavailable; transient=True only for connection-level
        failures worth one immediate retry.
        """
        pass


class HttpScorerClient(ScorerClient):
    """
    JSON-over-HTTP client for the external anomaly model.
    Request:  {"activity_id", "features", "feature_names"}
    Response: {"anomalyProbability": float, "modelVersion": str}
    """

    def __init__(self, url: str, session: Optional[requests.Session] = None, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.session = session or requests.Session()
        self.headers = dict(headers or {})

    def predict(self, activity_id: str, features: List[float], timeout: float) -> ScorerResponse:
        body = {
            "activity_id": activity_id,
            "features": [float(v) for v in features],
            "feature_names": list(FEATURE_NAMES),
        }
        try:
            response = self.session.post(self.url, json=body, headers=self.headers, timeout=timeout)
        except requests.Timeout as e:
            logger.warning(f"Scorer timeout for {activity_id}: {e}")
            raise ScorerUnavailable("timeout", transient=False) from e
        except requests.ConnectionError as e:
            logger.warning(f"Scorer connection error for {activity_id}: {e}")
            raise ScorerUnavailable(f"connection_error: {e}", transient=True) from e
        except requests.RequestException as e:
            logger.error(f"Scorer request failed for {activity_id}: {e}")
            raise ScorerUnavailable(f"request_error: {e}", transient=False) from e

        if not 200 <= response.status_code < 300:
            raise ScorerUnavailable(f"http_{response.status_code}", transient=False)

        try:
            data = response.json()
        except (ValueError, json.JSONDecodeError) as e:
            raise ScorerUnavailable("invalid_json", transient=False) from e

        return parse_scorer_response(data)


def parse_scorer_response(data) -> ScorerResponse:
    if not isinstance(data, dict) or "anomalyProbability" not in data:
        raise ScorerUnavailable("missing anomalyProbability", transient=False)
    try:
        probability = float(data["anomalyProbability"])
    except (TypeError, ValueError) as e:
        raise ScorerUnavailable("non-numeric anomalyProbability", transient=False) from e
    if not 0.0 <= probability <= 1.0:
        raise ScorerUnavailable(f"anomalyProbability out of range: {probability}", transient=False)
    return ScorerResponse(anomaly_probability=probability, model_version=str(data.get("modelVersion", "unknown")))
