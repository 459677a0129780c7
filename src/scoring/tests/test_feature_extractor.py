from datetime import datetime, timedelta, timezone

import pytest

from src.correlation.domain.identity_signature import IdentitySignature, SignalKey, SignalType
from src.ingestion.domain.normalized_activity import NormalizedActivity
from src.scoring.domain.feature_vector import FeatureVector
from src.scoring.services.feature_extractor import FeatureConfig, FeatureExtractor
from src.scoring.services.heuristic_scorer import HeuristicScorer

T0 = datetime(2025, 10, 9, 12, 0, tzinfo=timezone.utc)
TERMS = ("mdma", "cash only", "escort")


def _activity(activity_id: str, text: str = "hello", at: datetime = T0, platform: str = "telegram"):
    return NormalizedActivity(activity_id=activity_id, platform=platform, occurred_at=at, text=text)


def _signature() -> IdentitySignature:
    return IdentitySignature(
        signature_id="sig-1",
        version=1,
        signals=frozenset([SignalKey(SignalType.FINGERPRINT, "fp1")]),
        matched_types=frozenset(),
        confidence=0.9,
        created_at=T0,
        updated_at=T0,
    )


def _extractor(**kwargs) -> FeatureExtractor:
    return FeatureExtractor(FeatureConfig(suspicious_terms=TERMS, **kwargs))


def test_keyword_hit_is_reflected_in_density():
    features = _extractor().extract(_activity("a1", "selling MDMA"), _signature(), [])

    assert features.keyword_hits == 1
    assert features.keyword_density == pytest.approx(0.5)
    assert features.message_frequency == 1.0
    assert features.platform_diversity == 1.0
    assert features.time_of_day_entropy == 0.0


def test_multi_word_terms_and_punctuation():
    hits, density = _extractor().keyword_density("Cash only! no questions, MDMA.")
    assert hits == 2
    assert density == pytest.approx(2 / 5)


def test_history_drives_frequency_diversity_and_entropy():
    history = [
        _activity("h1", at=T0 - timedelta(minutes=10), platform="instagram"),
        _activity("h2", at=T0 - timedelta(minutes=50), platform="whatsapp"),
        _activity("h3", at=T0 - timedelta(hours=3), platform="telegram"),
    ]
    features = _extractor(window_seconds=3600).extract(_activity("a1"), _signature(), history)

    assert features.message_frequency == 3.0
    assert features.platform_diversity == 3.0
    assert 0.0 < features.time_of_day_entropy <= 1.0


def test_current_activity_in_history_is_not_double_counted():
    current = _activity("a1")
    features = _extractor().extract(current, _signature(), [current])
    assert features.message_frequency == 1.0


def test_unresolved_identity_ignores_history():
    history = [_activity("h1", at=T0 - timedelta(minutes=1), platform="instagram")]
    features = _extractor().extract(_activity("a1"), None, history)

    assert features.message_frequency == 1.0
    assert features.platform_diversity == 1.0


def test_extract_is_deterministic():
    history = [_activity("h1", at=T0 - timedelta(minutes=5))]
    extractor = _extractor()
    first = extractor.extract(_activity("a1", "escort"), _signature(), history)
    second = extractor.extract(_activity("a1", "escort"), _signature(), list(history))
    assert first == second
    assert len(first.as_list()) == 4


def test_heuristic_scores_keyword_hit_above_default_threshold():
    features = FeatureVector(
        message_frequency=1.0,
        keyword_density=0.5,
        platform_diversity=1.0,
        time_of_day_entropy=0.0,
    )
    assert HeuristicScorer().score(features) == pytest.approx(0.7075)


def test_heuristic_scores_benign_activity_low():
    features = FeatureVector(1.0, 0.0, 1.0, 0.0)
    assert HeuristicScorer().score(features) < 0.1


def test_feature_vector_from_list_checks_length():
    with pytest.raises(ValueError):
        FeatureVector.from_list([1.0, 2.0])
    assert FeatureVector.from_list([1, 0, 1, 0]).as_list() == [1.0, 0.0, 1.0, 0.0]
