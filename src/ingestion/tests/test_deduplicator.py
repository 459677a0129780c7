import threading
from datetime import datetime, timezone

from src.core.time.clock import FrozenClock
from src.ingestion.dedup.deduplicator import Admission, DeduplicatorConfig, InMemoryDeduplicator
from src.ingestion.domain.raw_event import RawEvent
from src.ingestion.services.event_normalizer import EventNormalizer

START = datetime(2025, 10, 9, 12, 0, tzinfo=timezone.utc)


def _activity(text: str = "hello"):
    raw = RawEvent("telegram", "m-1", {"text": text, "ts": 1760000000}, START)
    return EventNormalizer().normalize(raw)


def test_same_event_is_admitted_once():
    dedup = InMemoryDeduplicator(clock=FrozenClock(START))
    activity = _activity()

    assert dedup.admit(activity) == Admission.ACCEPTED
    assert dedup.admit(_activity()) == Admission.DUPLICATE
    assert dedup.seen(activity.activity_id)


def test_mark_expires_after_window():
    clock = FrozenClock(START)
    dedup = InMemoryDeduplicator(DeduplicatorConfig(window_seconds=60), clock=clock)
    activity = _activity()

    assert dedup.admit(activity) == Admission.ACCEPTED
    clock.advance(seconds=59)
    assert dedup.admit(activity) == Admission.DUPLICATE
    clock.advance(seconds=2)
    assert not dedup.seen(activity.activity_id)
    assert dedup.admit(activity) == Admission.ACCEPTED


def test_release_allows_resubmission():
    dedup = InMemoryDeduplicator(clock=FrozenClock(START))
    activity = _activity()

    dedup.admit(activity)
    dedup.release(activity.activity_id)

    assert dedup.admit(activity) == Admission.ACCEPTED


def test_released_then_readmitted_mark_survives_old_expiry():
    clock = FrozenClock(START)
    dedup = InMemoryDeduplicator(DeduplicatorConfig(window_seconds=60), clock=clock)

    dedup.admit_id("a")
    dedup.release("a")
    clock.advance(seconds=30)
    dedup.admit_id("a")
    clock.advance(seconds=40)

    assert dedup.seen("a")


def test_concurrent_admission_accepts_exactly_once():
    dedup = InMemoryDeduplicator(DeduplicatorConfig(shards=4), clock=FrozenClock(START))
    ids = [f"id-{i}" for i in range(50)]
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def _run():
        barrier.wait()
        for activity_id in ids:
            outcome = dedup.admit_id(activity_id)
            with lock:
                results.append((activity_id, outcome))

    threads = [threading.Thread(target=_run) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    accepted = [i for i, outcome in results if outcome == Admission.ACCEPTED]
    assert sorted(accepted) == sorted(ids)
    assert dedup.size() == len(ids)


def test_purge_drops_only_marks_outside_the_window():
    clock = FrozenClock(START)
    dedup = InMemoryDeduplicator(DeduplicatorConfig(window_seconds=60, shards=4), clock=clock)
    for text in ("a", "b", "c"):
        dedup.admit(_activity(text))
    clock.advance(seconds=30)
    recent = _activity("d")
    dedup.admit(recent)
    clock.advance(seconds=31)

    assert dedup.purge_expired() == 3
    assert dedup.size() == 1
    assert dedup.seen(recent.activity_id)
    assert dedup.purge_expired() == 0
