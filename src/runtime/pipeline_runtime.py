import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from src.alerting.registry.subscription_registry import InMemorySubscriptionRegistry, SubscriptionRegistry
from src.alerting.services.alert_dispatcher import AlertDispatcher, DispatcherConfig
from src.alerting.transport.delivery_transport import DeliveryTransport, HttpWebhookTransport
from src.config.settings import Settings
from src.core.logging.structured_logger import StructuredLogger
from src.core.retry.retry_policy import RetryPolicy
from src.core.safety.circuit_breaker import CircuitBreaker
from src.core.time.clock import Clock, SystemClock
from src.correlation.services.identity_correlator import CorrelationConfig, IdentityCorrelator
from src.ingestion.dedup.deduplicator import (
    Deduplicator,
    DeduplicatorConfig,
    InMemoryDeduplicator,
    PostgresDeduplicator,
)
from src.ingestion.domain.raw_event import RawEvent
from src.ingestion.services.event_normalizer import EventNormalizer
from src.ingestion.worker.source_worker import SourceWorker, SourceWorkerConfig
from src.ingestion.worker.worker_supervisor import WorkerSupervisor
from src.pipeline.services.activity_pipeline import ActivityPipeline, PipelineConfig
from src.scoring.client.scorer_client import HttpScorerClient, ScorerClient
from src.scoring.services.anomaly_scorer import AnomalyScorer, ScorerConfig
from src.scoring.services.feature_extractor import FeatureConfig, FeatureExtractor
from src.store.activity_store import ActivityStore, InMemoryActivityStore
from src.store.postgres_activity_store import PostgresActivityStore
from src.store.services.reporting_service import ReportingService


@dataclass(frozen=True)
class RuntimeConfig:
    source_queue_capacity: int = 1000
    shutdown_drain_seconds: float = 10.0
    watchdog_interval_seconds: float = 1.0
    maintenance_interval_seconds: float = 60.0


class PipelineRuntime:
    """
    In-process runtime that wires sources -> pipeline -> store -> alert delivery.
    """

    def __init__(
        self,
        pipeline: ActivityPipeline,
        registry: SubscriptionRegistry,
        reporting: ReportingService,
        config: RuntimeConfig = RuntimeConfig(),
        logger: Optional[StructuredLogger] = None,
    ):
        self.pipeline = pipeline
        self.registry = registry
        self.reporting = reporting
        self.config = config
        self.logger = logger or StructuredLogger()
        self.workers: Dict[str, SourceWorker] = {}
        self.supervisor: Optional[WorkerSupervisor] = None
        self._started = False
        self._maintenance_stop = threading.Event()
        self._maintenance_thread: Optional[threading.Thread] = None

    @property
    def store(self) -> ActivityStore:
        return self.pipeline.store

    @property
    def dispatcher(self) -> AlertDispatcher:
        return self.pipeline.dispatcher

    @property
    def correlator(self) -> IdentityCorrelator:
        return self.pipeline.correlator

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sources: Iterable[str] = (),
        clock: Optional[Clock] = None,
        scorer_client: Optional[ScorerClient] = None,
        transport: Optional[DeliveryTransport] = None,
        store: Optional[ActivityStore] = None,
        deduplicator: Optional[Deduplicator] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> "PipelineRuntime":
        clock = clock or SystemClock()
        logger = logger or StructuredLogger()

        dedup_config = DeduplicatorConfig(
            window_seconds=settings.DEDUP_WINDOW_SECONDS,
            shards=settings.DEDUP_SHARDS,
        )
        if store is None:
            store = PostgresActivityStore.from_dsn(settings.DATABASE_URL) if settings.DATABASE_URL else InMemoryActivityStore()
        if deduplicator is None:
            if settings.DATABASE_URL:
                deduplicator = PostgresDeduplicator.from_dsn(settings.DATABASE_URL, dedup_config)
            else:
                deduplicator = InMemoryDeduplicator(dedup_config, clock=clock)
        if scorer_client is None and settings.SCORER_URL:
            scorer_client = HttpScorerClient(settings.SCORER_URL)

        correlator = IdentityCorrelator(
            CorrelationConfig(
                window_days=settings.CORRELATION_WINDOW_DAYS,
                shards=settings.CORRELATION_SHARDS,
                weight_fingerprint=settings.WEIGHT_FINGERPRINT,
                weight_ip=settings.WEIGHT_IP,
                weight_handle=settings.WEIGHT_HANDLE,
            ),
            clock=clock,
            on_version=store.append_signature,
        )
        correlator.restore(store.signature_versions())

        scorer = AnomalyScorer(
            client=scorer_client,
            config=ScorerConfig(
                timeout_seconds=settings.SCORER_TIMEOUT_SECONDS,
                pool_size=settings.SCORER_POOL_SIZE,
                admission_timeout_seconds=settings.SCORER_ADMISSION_TIMEOUT_SECONDS,
                retry_interval_seconds=settings.SCORER_RETRY_INTERVAL_SECONDS,
            ),
            circuit_breaker=CircuitBreaker(),
            clock=clock,
            logger=logger,
        )
        registry = InMemorySubscriptionRegistry(clock=clock)
        dispatcher = AlertDispatcher(
            registry=registry,
            transport=transport or HttpWebhookTransport(),
            store=store,
            config=DispatcherConfig(
                global_threshold=settings.ANOMALY_THRESHOLD,
                queue_capacity=settings.DELIVERY_QUEUE_CAPACITY,
                delivery_timeout_seconds=settings.DELIVERY_TIMEOUT_SECONDS,
            ),
            retry_policy=RetryPolicy(
                max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
                base_delay_seconds=settings.DELIVERY_BASE_DELAY_SECONDS,
                max_delay_seconds=settings.DELIVERY_MAX_DELAY_SECONDS,
            ),
            clock=clock,
            logger=logger,
        )
        pipeline = ActivityPipeline(
            normalizer=EventNormalizer(),
            deduplicator=deduplicator,
            correlator=correlator,
            extractor=FeatureExtractor(
                FeatureConfig(
                    window_seconds=settings.FEATURE_WINDOW_SECONDS,
                    suspicious_terms=tuple(settings.SUSPICIOUS_TERMS),
                )
            ),
            scorer=scorer,
            store=store,
            dispatcher=dispatcher,
            config=PipelineConfig(
                history_window_seconds=settings.FEATURE_WINDOW_SECONDS,
                history_limit=settings.HISTORY_LIMIT,
            ),
            clock=clock,
            logger=logger,
        )
        runtime = cls(
            pipeline=pipeline,
            registry=registry,
            reporting=ReportingService(store),
            config=RuntimeConfig(
                source_queue_capacity=settings.SOURCE_QUEUE_CAPACITY,
                shutdown_drain_seconds=settings.SHUTDOWN_DRAIN_SECONDS,
                maintenance_interval_seconds=settings.DEDUP_PURGE_INTERVAL_SECONDS,
            ),
            logger=logger,
        )
        for name in sources:
            runtime.add_source(name)
        return runtime

    def add_source(self, name: str, poller: Optional[Callable[[], Iterable[RawEvent]]] = None) -> SourceWorker:
        if self._started:
            raise RuntimeError("sources must be registered before start()")
        worker = SourceWorker(
            SourceWorkerConfig(name=name, capacity=self.config.source_queue_capacity),
            self.pipeline,
            poller=poller,
            logger=self.logger,
        )
        self.workers[name] = worker
        return worker

    def source(self, name: str) -> Optional[SourceWorker]:
        return self.workers.get(name)

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.dispatcher.start()
        self.supervisor = WorkerSupervisor(list(self.workers.values()))
        self.supervisor.start()
        self.supervisor.start_watchdog(self.config.watchdog_interval_seconds)
        self._maintenance_stop.clear()
        self._maintenance_thread = threading.Thread(
            target=self._run_maintenance_loop, name="runtime-maintenance", daemon=True
        )
        self._maintenance_thread.start()

    def stop(self) -> int:
        """
        Stop pulling new events, let each worker finish its current one, then
        flush alert delivery within the drain budget. Returns the number of
        deliveries still pending afterwards.
        """
        if not self._started:
            return self.dispatcher.pending_count()
        deadline = time.monotonic() + max(0.0, self.config.shutdown_drain_seconds)
        self._maintenance_stop.set()
        if self.supervisor:
            self.supervisor.stop(join_timeout=max(0.0, deadline - time.monotonic()))
        if self._maintenance_thread:
            self._maintenance_thread.join(timeout=max(0.0, deadline - time.monotonic()))
            self._maintenance_thread = None
        remaining = self.dispatcher.stop(drain_seconds=max(0.0, deadline - time.monotonic()))
        self.pipeline.scorer.shutdown()
        self._started = False
        return remaining

    def integrity_violations(self) -> List:
        out = []
        for worker in self.workers.values():
            out.extend(worker.integrity_violations)
        return out

    def run_maintenance(self) -> int:
        """
        Drop dedup marks that have left the window. Returns the number purged.
        """
        purged = self.pipeline.deduplicator.purge_expired()
        if purged:
            self.logger.emit("DEDUP_PURGED", purged=purged)
        return purged

    def _run_maintenance_loop(self) -> None:
        while not self._maintenance_stop.wait(self.config.maintenance_interval_seconds):
            try:
                self.run_maintenance()
            except Exception as exc:
                self.logger.error("MAINTENANCE_FAILED", error=str(exc))
