import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from src.core.errors import ConflictingWrite, MalformedEvent
from src.core.logging.structured_logger import StructuredLogger
from src.ingestion.domain.raw_event import RawEvent
from src.pipeline.services.activity_pipeline import ActivityPipeline, PipelineOutcome


@dataclass(frozen=True)
class SourceWorkerConfig:
    name: str
    capacity: int = 1000
    poll_interval_seconds: float = 0.2
    batch_size: int = 50


class SourceWorker:
    """
    One worker per upstream source. Push sources offer() into a bounded intake
    queue; pull sources supply a poller returning the next batch of events.
    A bad event is logged and skipped, it never stalls the worker.
    """

    def __init__(
        self,
        config: SourceWorkerConfig,
        pipeline: ActivityPipeline,
        poller: Optional[Callable[[], Iterable[RawEvent]]] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.config = config
        self.pipeline = pipeline
        self.poller = poller
        self.logger = (logger or StructuredLogger()).bind(source=config.name)
        self.integrity_violations: List[ConflictingWrite] = []
        self.processed = 0
        self.rejected = 0
        self._queue: "queue.Queue[RawEvent]" = queue.Queue(maxsize=max(1, int(config.capacity)))
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.config.name

    def offer(self, raw: RawEvent, timeout: Optional[float] = None) -> bool:
        if self._stop_event.is_set():
            return False
        try:
            if timeout is None:
                self._queue.put_nowait(raw)
            else:
                self._queue.put(raw, timeout=timeout)
        except queue.Full:
            return False
        return True

    def backlog(self) -> int:
        return self._queue.qsize()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run_forever(self) -> None:
        while not self._stop_event.is_set():
            handled = self.run_once()
            if handled:
                continue
            try:
                raw = self._queue.get(timeout=self.config.poll_interval_seconds)
            except queue.Empty:
                continue
            self._handle(raw)
        self.logger.emit("WORKER_STOPPED", processed=self.processed, backlog=self.backlog())

    def run_once(self) -> int:
        """
        Handles at most batch_size events, checking the stop flag between
        events so shutdown only waits for the current one.
        """
        handled = 0
        if self.poller is not None and not self._stop_event.is_set():
            try:
                polled = list(self.poller() or [])
            except Exception as exc:
                self.logger.error("WORKER_ERROR", stage="poll", error=str(exc))
                polled = []
            for raw in polled:
                if not self.offer(raw, timeout=self.config.poll_interval_seconds):
                    self.logger.warning("WORKER_ERROR", stage="poll", error="intake_queue_full")
                    break
        while handled < self.config.batch_size and not self._stop_event.is_set():
            try:
                raw = self._queue.get_nowait()
            except queue.Empty:
                break
            self._handle(raw)
            handled += 1
        return handled

    def _handle(self, raw: RawEvent) -> Optional[PipelineOutcome]:
        try:
            outcome = self.pipeline.process(raw)
        except MalformedEvent:
            with self._lock:
                self.rejected += 1
            return None
        except ConflictingWrite as exc:
            with self._lock:
                self.integrity_violations.append(exc)
            return None
        except Exception as exc:
            self.logger.error("WORKER_ERROR", stage="process", source_id=raw.source_id, error=str(exc))
            return None
        finally:
            self._queue.task_done()
        with self._lock:
            self.processed += 1
        return outcome
