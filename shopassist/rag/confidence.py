"""Answer confidence heuristic."""
from typing import Optional, Sequence

NO_SOURCES_CONFIDENCE = 0.3
RETRIEVAL_WEIGHT = 0.7
MODEL_WEIGHT = 0.3
DEGRADED_FACTOR = 0.8


def compute_confidence(
    scores: Sequence[float],
    model_confidence: Optional[float] = None,
    response_text: str = "",
    degraded: bool = False,
) -> float:
    """Score an answer in [0, 1].

    Non-decreasing in each retrieval score when the source count is fixed.

    Args:
        scores: Similarity scores of the sources used
        model_confidence: Confidence reported by the completion provider, if any
        response_text: Final answer text
        degraded: The answer was produced without retrieval or without the model

    Returns:
        Confidence clamped to [0, 1]
    """
    if scores:
        confidence = sum(min(max(s, 0.0), 1.0) for s in scores) / len(scores)
        if len(scores) >= 3:
            confidence *= 1.1
        elif len(scores) == 1:
            confidence *= 0.9
    else:
        confidence = NO_SOURCES_CONFIDENCE

    if response_text and (len(response_text) < 50 or len(response_text) > 1000):
        confidence *= 0.95

    confidence = min(confidence, 1.0)

    if model_confidence is not None:
        model_confidence = min(max(model_confidence, 0.0), 1.0)
        confidence = RETRIEVAL_WEIGHT * confidence + MODEL_WEIGHT * model_confidence

    if degraded:
        confidence *= DEGRADED_FACTOR

    return min(max(confidence, 0.0), 1.0)
