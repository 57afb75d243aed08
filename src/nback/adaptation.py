"""
Post-session difficulty adaptation of the lure thresholds.
"""
from __future__ import annotations

from psychopy import logging

from nback import config
from nback.config import AdaptationPolicy, CalibrationThresholds, Modality
from nback.recorder import PerformanceRecord


def adapt_thresholds(
    thresholds: CalibrationThresholds,
    record: PerformanceRecord | None,
    policy: AdaptationPolicy = AdaptationPolicy.SESSION_WIDE,
) -> CalibrationThresholds:
    """
    Return the thresholds for the next session.

    SESSION_WIDE  every threshold shrinks when overall accuracy beats the cutoff
    PER_MODALITY  each enabled modality shrinks on its own accuracy

    No record (aborted session) means no change.
    """
    if record is None:
        return thresholds

    if policy is AdaptationPolicy.PER_MODALITY:
        shrink = [
            m for m, acc in record.modality_accuracy.items()
            if acc > config.ADAPT_ACCURACY_CUTOFF
        ]
    elif record.accuracy > config.ADAPT_ACCURACY_CUTOFF:
        shrink = list(config.MODALITIES)
    else:
        shrink = []

    if not shrink:
        return thresholds

    partial: dict[Modality, float] = {
        m: thresholds.get(m) * config.ADAPT_SHRINK_FACTOR for m in shrink
    }
    adapted = thresholds.merged(partial)
    logging.exp(
        f"Thresholds adapted ({policy.value}): "
        + "  ".join(f"{m.value}={adapted.get(m):.4g}" for m in shrink)
    )
    return adapted
