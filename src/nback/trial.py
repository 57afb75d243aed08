"""
Per-trial event construction: lag selection, match/lure assignment and lure perturbation.
No clocks and no rendering objects are used here; all randomness comes from the injected Generator.
"""
from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from psychopy import logging

from nback import config
from nback.config import Modality
from nback.stimulus import Cell, Stimulus

MATCH = "MATCH"
LURE = "LURE"
RANDOM = "RAND"


@dataclass(frozen=True)
class NBackEvent:
    id: int
    n: int
    stimulus: Stimulus
    is_match: dict[Modality, bool] = field(default_factory=dict)
    lure_type: Modality | None = None
    labels: tuple[str, ...] = ()

    @property
    def matchable(self) -> bool:
        """True once enough trials have passed for this event to be compared N back."""
        return self.id >= self.n

    def matches(self, modality: Modality) -> bool:
        return self.is_match.get(modality, False)

    @property
    def dev_info(self) -> str:
        return " ".join(self.labels)


# ── Lag selection ───────────────────────────────────────────────────────────


def valid_lags(max_n: int) -> list[int]:
    """Lags 1..max_n excluding the non-trivial divisors of max_n."""
    if max_n <= 2:
        return list(range(1, max_n + 1))
    divisors = set()
    for i in range(2, int(max_n ** 0.5) + 1):
        if max_n % i == 0:
            divisors.update((i, max_n // i))
    return [n for n in range(1, max_n + 1) if n not in divisors]


def lag_weights(lags: list[int]) -> np.ndarray:
    """Exponential weights by rank; larger lags are sampled more often."""
    weights = np.exp(np.arange(len(lags), dtype=np.float64))
    return weights / weights.sum()


def sample_lag(rng: np.random.Generator, lags: list[int]) -> int:
    if not lags:
        logging.warning("No valid lag available; falling back to N=1")
        return 1
    if len(lags) == 1:
        return lags[0]
    return int(rng.choice(lags, p=lag_weights(lags)))


# ── Lure perturbation ───────────────────────────────────────────────────────


def _direction(rng: np.random.Generator) -> int:
    return 1 if rng.random() < 0.5 else -1


def lure_spatial(cell: Cell, grid_rows: int, grid_cols: int, rng: np.random.Generator) -> Cell | None:
    """Move one grid step to an in-bounds neighbour; None when there is none."""
    neighbours = [
        Cell(cell.row - 1, cell.col), Cell(cell.row + 1, cell.col),
        Cell(cell.row, cell.col - 1), Cell(cell.row, cell.col + 1),
    ]
    in_bounds = [c for c in neighbours if 0 <= c.row < grid_rows and 0 <= c.col < grid_cols]
    if not in_bounds:
        return None
    return in_bounds[int(rng.integers(0, len(in_bounds)))]


def lure_audio(frequency: float, cents: float, rng: np.random.Generator) -> float:
    return frequency * 2 ** (_direction(rng) * cents / 1200)


def lure_color(
    hues: tuple[float, ...],
    degrees: float,
    rng: np.random.Generator,
    slots: tuple[int, int] | None = None,
) -> tuple[float, ...]:
    """
    Composite pattern: shift one slot by +d and another by -d so the mean hue is preserved.
    Slots are picked at random unless given. A single hue is shifted by ±degrees.
    """
    shifted = list(hues)
    if len(shifted) == 1:
        shifted[0] = (shifted[0] + _direction(rng) * degrees) % 360.0
        return tuple(shifted)
    if slots is None:
        first, second = (int(i) for i in rng.choice(len(shifted), size=2, replace=False))
        amount = _direction(rng) * degrees
    else:
        first, second = slots
        amount = degrees
    shifted[first] = (shifted[first] + amount) % 360.0
    shifted[second] = (shifted[second] - amount) % 360.0
    return tuple(shifted)


def lure_shape(radii: tuple[float, ...], step: float, rng: np.random.Generator) -> tuple[float, ...]:
    shifted = list(radii)
    idx = int(rng.integers(0, len(shifted)))
    shifted[idx] = float(np.clip(
        shifted[idx] + _direction(rng) * step, config.LURE_RADIUS_MIN, config.LURE_RADIUS_MAX,
    ))
    return tuple(shifted)


def lure_offset(
    offset: tuple[float, float], distance: float, rng: np.random.Generator,
) -> tuple[float, float]:
    """Displace a continuous position by `distance` in a random direction."""
    angle = rng.uniform(0.0, 2 * np.pi)
    return (offset[0] + distance * float(np.cos(angle)), offset[1] + distance * float(np.sin(angle)))


# ── Match / lure assignment ─────────────────────────────────────────────────


class MatchLureAssigner:
    """
    Decides match/lure/random per enabled modality and finalises the NBackEvent.

    Tracks how many matches were placed per modality over the session.
    """

    def __init__(self, session: config.SessionConfig, rng: np.random.Generator) -> None:
        self.rng = rng
        self.match_rate = session.match_rate
        self.lure_rate = session.lure_rate
        self.grid_rows = session.grid_rows
        self.grid_cols = session.grid_cols
        self.thresholds = session.thresholds
        self.modalities = session.active_modalities
        self.match_counts: dict[Modality, int] = {m: 0 for m in self.modalities}

    def _perturb(self, modality: Modality, target: Stimulus):
        threshold = self.thresholds.get(modality)
        if modality is Modality.SPATIAL:
            return lure_spatial(target.cell, self.grid_rows, self.grid_cols, self.rng)
        if modality is Modality.AUDIO:
            return lure_audio(target.frequency, threshold, self.rng)
        if modality is Modality.COLOR:
            return lure_color(target.hues, threshold, self.rng)
        return lure_shape(target.radii, threshold, self.rng)

    def assign(
        self, trial_index: int, n: int, history: list[NBackEvent], stimulus: Stimulus,
    ) -> NBackEvent:
        is_match = {m: False for m in self.modalities}
        labels = [f"N={n}"]
        lure_type: Modality | None = None

        if trial_index < n:
            labels.append("RANDOM (Pre-N)")
            return NBackEvent(trial_index, n, stimulus, is_match, None, tuple(labels))

        target = history[trial_index - n].stimulus
        for modality in self.modalities:
            tag = modality.value[0].upper()
            r = self.rng.random()
            if r < self.match_rate:
                stimulus = stimulus.with_value(modality, target.value(modality))
                is_match[modality] = True
                self.match_counts[modality] += 1
                labels.append(f"{tag}:{MATCH}")
            elif r < self.match_rate + self.lure_rate:
                value = self._perturb(modality, target)
                if value is None:
                    logging.warning(
                        f"Trial {trial_index}: no in-bounds neighbour for spatial lure; kept random cell"
                    )
                    labels.append(f"{tag}:{RANDOM}")
                    continue
                stimulus = stimulus.with_value(modality, value)
                if lure_type is None:
                    lure_type = modality
                labels.append(f"{tag}:{LURE}")
            else:
                labels.append(f"{tag}:{RANDOM}")

        return NBackEvent(trial_index, n, stimulus, is_match, lure_type, tuple(labels))
