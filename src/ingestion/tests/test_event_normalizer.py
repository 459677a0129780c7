from datetime import datetime, timezone

import pytest

from src.core.errors import MalformedEvent
from src.ingestion.domain.raw_event import RawEvent
from src.ingestion.services.event_normalizer import EventNormalizer, activity_id_for

T = 1760000000
RECEIVED = datetime(2025, 10, 9, tzinfo=timezone.utc)


def _raw(platform: str, payload: dict, source_id: str = "m-1") -> RawEvent:
    return RawEvent(platform=platform, source_id=source_id, payload=payload, received_at=RECEIVED)


def test_normalize_flat_telegram_event():
    activity = EventNormalizer().normalize(
        _raw("telegram", {"text": "selling MDMA", "from": {"fingerprint": "fp1"}, "ts": T})
    )

    assert activity.platform == "telegram"
    assert activity.text == "selling MDMA"
    assert activity.occurred_at == datetime.fromtimestamp(T, tz=timezone.utc)
    assert activity.signals.fingerprint == "fp1"
    assert activity.signals.ip_address is None
    assert activity.activity_id == activity_id_for("telegram", "m-1", "selling MDMA")


def test_normalize_is_deterministic():
    normalizer = EventNormalizer()
    raw = _raw("telegram", {"text": "hello", "from": {"fingerprint": "fp1"}, "ts": T})

    first = normalizer.normalize(raw)
    second = normalizer.normalize(raw)

    assert first == second
    assert first.activity_id == second.activity_id


def test_activity_id_depends_on_platform_and_source_id():
    normalizer = EventNormalizer()
    payload = {"text": "same text", "ts": T}

    a = normalizer.normalize(_raw("telegram", payload, source_id="1"))
    b = normalizer.normalize(_raw("instagram", payload, source_id="1"))
    c = normalizer.normalize(_raw("telegram", payload, source_id="2"))

    assert len({a.activity_id, b.activity_id, c.activity_id}) == 3


def test_nested_telegram_update_shape():
    payload = {
        "message": {
            "text": "cash only",
            "date": T,
            "from": {"username": "@Dealer_X"},
            "chat": {"id": -100200},
        }
    }
    activity = EventNormalizer().normalize(_raw("telegram", payload))

    assert activity.text == "cash only"
    assert activity.signals.handle == "dealer_x"
    assert activity.signals.chat_id == "-100200"


def test_instagram_and_whatsapp_mappings():
    normalizer = EventNormalizer()
    insta = normalizer.normalize(
        _raw(
            "Instagram",
            {"caption": {"text": "new girls"}, "taken_at": T, "user": {"username": "acct"}, "client": {"ip": "10.0.0.1"}},
        )
    )
    whatsapp = normalizer.normalize(
        _raw("whatsapp", {"text": {"body": "hi"}, "timestamp": str(T), "from": "+15550100", "metadata": {"ip": "10.0.0.2"}})
    )

    assert insta.platform == "instagram"
    assert insta.text == "new girls"
    assert insta.signals.handle == "acct"
    assert insta.signals.ip_address == "10.0.0.1"
    assert whatsapp.platform == "whatsapp"
    assert whatsapp.signals.handle == "+15550100"
    assert whatsapp.signals.ip_address == "10.0.0.2"


def test_unknown_platform_uses_generic_mapping():
    activity = EventNormalizer().normalize(_raw("Signal", {"body": "hello", "timestamp": "2025-10-09T10:00:00Z"}))

    assert activity.platform == "unknown"
    assert activity.source_platform == "signal"
    assert activity.occurred_at == datetime(2025, 10, 9, 10, 0, tzinfo=timezone.utc)


def test_millisecond_epoch_is_accepted():
    activity = EventNormalizer().normalize(_raw("telegram", {"text": "x", "ts": T * 1000}))
    assert activity.occurred_at == datetime.fromtimestamp(T, tz=timezone.utc)


@pytest.mark.parametrize(
    "payload",
    [
        {"ts": T},
        {"text": "   ", "ts": T},
        {"text": "no time"},
        {"text": "bad time", "ts": "yesterday"},
    ],
)
def test_malformed_events_are_rejected(payload):
    with pytest.raises(MalformedEvent):
        EventNormalizer().normalize(_raw("telegram", payload))


def test_non_dict_payload_is_malformed():
    raw = RawEvent(platform="telegram", source_id="1", payload=None, received_at=RECEIVED)  # type: ignore[arg-type]
    with pytest.raises(MalformedEvent) as exc:
        EventNormalizer().normalize(raw)
    assert exc.value.platform == "telegram"
