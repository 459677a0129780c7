import os
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Empty DSN keeps every store in memory
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # Deduplication
    DEDUP_WINDOW_SECONDS: int = 86400
    DEDUP_SHARDS: int = 16
    DEDUP_PURGE_INTERVAL_SECONDS: float = 60.0

    # Identity correlation
    CORRELATION_WINDOW_DAYS: int = 30
    CORRELATION_SHARDS: int = 16
    WEIGHT_FINGERPRINT: float = 0.9
    WEIGHT_IP: float = 0.6
    WEIGHT_HANDLE: float = 0.5

    # Feature extraction
    FEATURE_WINDOW_SECONDS: int = 3600
    HISTORY_LIMIT: int = 500
    SUSPICIOUS_TERMS: List[str] = [
        "mdma",
        "escort",
        "passport",
        "visa sponsor",
        "no papers",
        "cash only",
        "new girls",
        "young",
        "transport provided",
        "debt",
    ]

    # External scorer
    SCORER_URL: str = ""
    SCORER_TIMEOUT_SECONDS: float = 2.0
    SCORER_POOL_SIZE: int = 8
    SCORER_ADMISSION_TIMEOUT_SECONDS: float = 0.5
    SCORER_RETRY_INTERVAL_SECONDS: float = 0.1
    ANOMALY_THRESHOLD: float = 0.6

    # Alert delivery
    DELIVERY_MAX_ATTEMPTS: int = 5
    DELIVERY_BASE_DELAY_SECONDS: float = 1.0
    DELIVERY_MAX_DELAY_SECONDS: float = 60.0
    DELIVERY_TIMEOUT_SECONDS: float = 5.0
    DELIVERY_QUEUE_CAPACITY: int = 1000

    # Ingestion workers
    SOURCE_QUEUE_CAPACITY: int = 1000
    SHUTDOWN_DRAIN_SECONDS: float = 10.0


settings = Settings()
