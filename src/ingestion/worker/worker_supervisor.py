import threading
import time
from typing import Dict, List, Optional

from src.ingestion.worker.source_worker import SourceWorker


class WorkerSupervisor:
    """
    In-process supervisor for source workers.
    Restarts dead worker threads and supports graceful stop.
    """

    def __init__(self, workers: List[SourceWorker]):
        self.workers = list(workers)
        self._threads: Dict[str, threading.Thread] = {}
        self._watchdog_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.restarts = 0

    def get(self, name: str) -> Optional[SourceWorker]:
        for worker in self.workers:
            if worker.name == name:
                return worker
        return None

    def start(self) -> None:
        self._stop_event.clear()
        for worker in self.workers:
            self._spawn(worker)

    def stop(self, join_timeout: float = 2.0) -> None:
        """
        Signal every worker, then wait for them within one shared join_timeout.
        """
        deadline = time.monotonic() + max(0.0, join_timeout)
        self._stop_event.set()
        for worker in self.workers:
            worker.stop()
        for thread in self._threads.values():
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        if self._watchdog_thread:
            self._watchdog_thread.join(timeout=max(0.0, deadline - time.monotonic()))
            self._watchdog_thread = None

    def check(self) -> int:
        restarted = 0
        for worker in self.workers:
            thread = self._threads.get(worker.name)
            if worker.stopped or (thread is not None and thread.is_alive()):
                continue
            self._spawn(worker)
            restarted += 1
        self.restarts += restarted
        return restarted

    def run_watchdog(self, interval_seconds: float = 1.0) -> None:
        while not self._stop_event.is_set():
            self.check()
            self._stop_event.wait(interval_seconds)

    def start_watchdog(self, interval_seconds: float = 1.0) -> None:
        self._watchdog_thread = threading.Thread(
            target=self.run_watchdog,
            kwargs={"interval_seconds": interval_seconds},
            daemon=True,
        )
        self._watchdog_thread.start()

    def _spawn(self, worker: SourceWorker) -> None:
        thread = threading.Thread(target=worker.run_forever, name=f"source-{worker.name}", daemon=True)
        thread.start()
        self._threads[worker.name] = thread
