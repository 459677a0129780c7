from dataclasses import dataclass

from src.scoring.domain.feature_vector import FeatureVector


@dataclass(frozen=True)
class HeuristicWeights:
    keyword: float = 0.7
    frequency: float = 0.15
    diversity: float = 0.1
    entropy: float = 0.05


class HeuristicScorer:
    """
    Rule-based stand-in for the external model: weighted sum of saturated
    feature signals. Any suspicious-term hit dominates the score.
    """

    def __init__(
        self,
        weights: HeuristicWeights = HeuristicWeights(),
        keyword_saturation: float = 0.25,
        frequency_saturation: float = 20.0,
        diversity_saturation: float = 3.0,
    ):
        self.weights = weights
        self.keyword_saturation = keyword_saturation
        self.frequency_saturation = frequency_saturation
        self.diversity_saturation = diversity_saturation

    def score(self, features: FeatureVector) -> float:
        keyword = _saturate(features.keyword_density, self.keyword_saturation)
        frequency = _saturate(features.message_frequency, self.frequency_saturation)
        diversity = _saturate(features.platform_diversity - 1.0, self.diversity_saturation - 1.0)
        entropy = min(1.0, max(0.0, features.time_of_day_entropy))
        total = (
            self.weights.keyword * keyword
            + self.weights.frequency * frequency
            + self.weights.diversity * diversity
            + self.weights.entropy * entropy
        )
        weight_sum = self.weights.keyword + self.weights.frequency + self.weights.diversity + self.weights.entropy
        if weight_sum <= 0:
            return 0.0
        return min(1.0, max(0.0, total / weight_sum))


def _saturate(value: float, saturation: float) -> float:
    if saturation <= 0:
        return 1.0 if value > 0 else 0.0
    return min(1.0, max(0.0, value / saturation))
