"""
Response classification and running score.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from psychopy import logging

from nback.config import AccuracyFormula, Modality
from nback.trial import NBackEvent

HIT = "hit"
MISS = "miss"
FALSE_ALARM = "false_alarm"

# Ratio reported when nothing was there to be scored
EMPTY_RATIO: float = 1.0


def _counter(modalities) -> dict[Modality, int]:
    return {m: 0 for m in modalities}


@dataclass
class Score:
    hits: dict[Modality, int] = field(default_factory=dict)
    misses: dict[Modality, int] = field(default_factory=dict)
    false_alarms: dict[Modality, int] = field(default_factory=dict)

    @classmethod
    def empty(cls, modalities) -> Score:
        return cls(_counter(modalities), _counter(modalities), _counter(modalities))

    @property
    def total_hits(self) -> int:
        return sum(self.hits.values())

    @property
    def total_misses(self) -> int:
        return sum(self.misses.values())

    @property
    def total_false_alarms(self) -> int:
        return sum(self.false_alarms.values())

    def copy(self) -> Score:
        return Score(dict(self.hits), dict(self.misses), dict(self.false_alarms))


def _ratio(num: int, den: int) -> float:
    return num / den if den > 0 else EMPTY_RATIO


class ScoreTracker:
    """
    Classifies responses against the current event and accumulates the score.

    A (event id, modality) pair is scored at most once: either by a response
    (hit / false alarm) or, for unanswered matches, by resolve_misses().
    """

    def __init__(self, modalities: list[Modality]) -> None:
        self.modalities = list(modalities)
        self.score = Score.empty(self.modalities)
        self.outcomes: dict[tuple[int, Modality], str] = {}
        self.matches = _counter(self.modalities)
        self.non_matches = _counter(self.modalities)

    def register(self, event: NBackEvent) -> None:
        """Count the scoring opportunities a newly presented event creates."""
        if not event.matchable:
            return
        for m in self.modalities:
            if event.matches(m):
                self.matches[m] += 1
            else:
                self.non_matches[m] += 1

    def respond(self, event: NBackEvent | None, modality: Modality) -> str | None:
        """Score a "match" response to `event`; returns the outcome or None if ignored."""
        if event is None or modality not in self.modalities or not event.matchable:
            return None
        key = (event.id, modality)
        if key in self.outcomes:
            return None
        if event.matches(modality):
            self.score.hits[modality] += 1
            outcome = HIT
        else:
            self.score.false_alarms[modality] += 1
            outcome = FALSE_ALARM
        self.outcomes[key] = outcome
        logging.data(f"Trial {event.id}  {modality.value:<7}  {outcome}")
        return outcome

    def resolve_misses(self, event: NBackEvent | None) -> list[Modality]:
        """Turn the event's unanswered matches into misses."""
        if event is None or not event.matchable:
            return []
        missed = []
        for m in self.modalities:
            key = (event.id, m)
            if event.matches(m) and key not in self.outcomes:
                self.outcomes[key] = MISS
                self.score.misses[m] += 1
                missed.append(m)
                logging.data(f"Trial {event.id}  {m.value:<7}  {MISS}")
        return missed

    # ── Derived measures ────────────────────────────────────────────────────

    def outcome(self, event_id: int, modality: Modality) -> str | None:
        return self.outcomes.get((event_id, modality))

    def correct_rejections(self, modality: Modality) -> int:
        return self.non_matches[modality] - self.score.false_alarms[modality]

    def decisions(self, modality: Modality) -> int:
        return self.matches[modality] + self.non_matches[modality]

    def accuracy(self, formula: AccuracyFormula, modality: Modality | None = None) -> float:
        mods = self.modalities if modality is None else [modality]
        return compute_accuracy(self.score, self.matches, self.non_matches, formula, mods)


def compute_accuracy(
    score: Score,
    matches: dict[Modality, int],
    non_matches: dict[Modality, int],
    formula: AccuracyFormula,
    modalities=None,
) -> float:
    """
    Session accuracy under the chosen formula, pooled over `modalities` (default: all scored).

    HIT_RATE            hits / matches
    CORRECT_DECISIONS   (hits + correct rejections) / (matches + non-matches)
    HITS_OVER_RESPONSES hits / (matches + false alarms)

    A zero denominator yields EMPTY_RATIO.
    """
    mods = list(score.hits) if modalities is None else list(modalities)
    hits = sum(score.hits[m] for m in mods)
    n_match = sum(matches[m] for m in mods)
    fas = sum(score.false_alarms[m] for m in mods)
    if formula is AccuracyFormula.HIT_RATE:
        return _ratio(hits, n_match)
    if formula is AccuracyFormula.HITS_OVER_RESPONSES:
        return _ratio(hits, n_match + fas)
    n_non_match = sum(non_matches[m] for m in mods)
    return _ratio(hits + n_non_match - fas, n_match + n_non_match)
