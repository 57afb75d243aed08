"""
Threshold calibration: staircase step rules and the same/different probe protocol.
All staircase values are in the modality's threshold unit (cents, hue degrees,
radius fraction, normalized board distance).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from enum import Enum
from typing import Callable

import numpy as np
from psychopy import logging

from nback import config
from nback.config import CalibrationThresholds, Modality, SessionStateError, StaircaseVariant
from nback.stimulus import Stimulus, StimulusGenerator
from nback.timing import TimerQueue
from nback.trial import lure_audio, lure_color, lure_offset, lure_shape

# Composite-color probe: shift the middle hue, compensate on the last
CALIBRATION_COLOR_SLOTS: tuple[int, int] = (1, 2)


class Staircase(ABC):
    """Multiplicative staircase floored at a modality minimum."""

    def __init__(self, modality: Modality, start: float, max_trials: int) -> None:
        self.modality = modality
        self.floor = config.THRESHOLD_FLOORS[modality]
        self.value = max(self.floor, float(start))
        self.max_trials = max_trials
        self.n_trials = 0
        self.finished = False
        self.history: list[tuple[float, bool]] = []

    @abstractmethod
    def _step(self, correct: bool) -> None:
        """Move `value` after one response."""

    def add_response(self, correct: bool) -> None:
        if self.finished:
            return
        self.history.append((self.value, correct))
        self.n_trials += 1
        self._step(correct)
        self.value = max(self.floor, self.value)
        if self.n_trials >= self.max_trials:
            self.finished = True


class ConvergingStaircase(Staircase):
    """Correct -> x0.90, incorrect -> x1.25; runs the full trial budget."""

    def __init__(self, modality: Modality, start: float, max_trials: int = config.CONVERGING_TRIALS) -> None:
        super().__init__(modality, start, max_trials)

    def _step(self, correct: bool) -> None:
        self.value *= config.STEP_DOWN_FACTOR if correct else config.STEP_UP_FACTOR


class LimitStaircase(Staircase):
    """Ascending only: starts at the floor, raises on errors, stops at the first correct answer."""

    def __init__(self, modality: Modality, max_trials: int = config.LIMIT_MAX_TRIALS) -> None:
        super().__init__(modality, config.THRESHOLD_FLOORS[modality], max_trials)

    def _step(self, correct: bool) -> None:
        if correct:
            self.finished = True
        else:
            self.value *= config.STEP_UP_FACTOR


def build_staircase(
    variant: StaircaseVariant, modality: Modality, thresholds: CalibrationThresholds,
) -> Staircase:
    if variant is StaircaseVariant.LIMIT:
        return LimitStaircase(modality)
    return ConvergingStaircase(modality, thresholds.get(modality))


def make_probe(
    base: Stimulus,
    modality: Modality,
    threshold: float,
    rng: np.random.Generator,
) -> Stimulus:
    """Copy of `base` perturbed by `threshold` in one modality."""
    if modality is Modality.AUDIO:
        return base.with_value(modality, lure_audio(base.frequency, threshold, rng))
    if modality is Modality.COLOR:
        slots = CALIBRATION_COLOR_SLOTS if len(base.hues) > 1 else None
        return base.with_value(modality, lure_color(base.hues, threshold, rng, slots=slots))
    if modality is Modality.SHAPE:
        return base.with_value(modality, lure_shape(base.radii, threshold, rng))
    return replace(base, offset=lure_offset(base.offset, threshold, rng))


class CalibrationPhase(str, Enum):
    IDLE = "idle"
    STIMULUS = "stimulus"
    ISI1 = "isi1"
    NOISE = "noise"
    ISI2 = "isi2"
    PROBE = "probe"
    RESPONSE = "response"
    FEEDBACK = "feedback"
    FINISHED = "finished"


_NEXT_PHASE: dict[CalibrationPhase, CalibrationPhase] = {
    CalibrationPhase.STIMULUS: CalibrationPhase.ISI1,
    CalibrationPhase.ISI1: CalibrationPhase.NOISE,
    CalibrationPhase.NOISE: CalibrationPhase.ISI2,
    CalibrationPhase.ISI2: CalibrationPhase.PROBE,
    CalibrationPhase.PROBE: CalibrationPhase.RESPONSE,
}


class CalibrationRun:
    """
    One modality's staircase run.

    Each trial: base stimulus -> gap -> random noise stimulus -> gap -> probe
    (always a threshold-perturbed copy of the base) -> wait for same/different
    -> feedback. "different" is always the correct answer.
    """

    def __init__(
        self,
        modality: Modality,
        staircase: Staircase,
        generator: StimulusGenerator,
        timers: TimerQueue,
        on_display: Callable[[Stimulus | None, CalibrationPhase], None] | None = None,
        on_complete: Callable[[dict[Modality, float]], None] | None = None,
    ) -> None:
        self.modality = modality
        self.staircase = staircase
        self.generator = generator
        self.timers = timers
        self.on_display = on_display
        self.on_complete = on_complete

        self.phase = CalibrationPhase.IDLE
        self.base: Stimulus | None = None
        self.shown: Stimulus | None = None
        self.last_correct: bool | None = None
        self.result: dict[Modality, float] | None = None
        self._generation = 0
        self._handle: int | None = None

    @property
    def finished(self) -> bool:
        return self.phase is CalibrationPhase.FINISHED

    def start(self) -> None:
        if self.phase is not CalibrationPhase.IDLE:
            raise SessionStateError(f"Calibration run already {self.phase.value}")
        logging.exp(
            f"Calibration start: {self.modality.value}  "
            f"{type(self.staircase).__name__}  start={self.staircase.value:.4g}"
        )
        self._enter(CalibrationPhase.STIMULUS)

    def respond(self, same: bool) -> bool | None:
        """Record a same/different answer; returns correctness or None when not accepting."""
        if self.phase is not CalibrationPhase.RESPONSE:
            return None
        correct = not same
        tested = self.staircase.value
        self.staircase.add_response(correct)
        self.last_correct = correct
        logging.exp(
            f"Calibration {self.modality.value} trial {self.staircase.n_trials}: "
            f"delta={tested:.4g}  {'correct' if correct else 'incorrect'}  "
            f"next={self.staircase.value:.4g}"
        )
        self._enter(CalibrationPhase.FEEDBACK)
        return correct

    def end(self) -> None:
        """Stop early, keeping the threshold accumulated so far."""
        if self.phase in (CalibrationPhase.IDLE, CalibrationPhase.FINISHED):
            return
        self._complete()

    # ── Phase chain ─────────────────────────────────────────────────────────

    def _arm(self, delay_ms: float, callback: Callable[[], None]) -> None:
        generation = self._generation

        def fire() -> None:
            if generation == self._generation and not self.finished:
                callback()

        self._handle = self.timers.call_later(delay_ms, fire)

    def _show(self, stimulus: Stimulus | None) -> None:
        self.shown = stimulus
        if self.on_display is not None:
            self.on_display(stimulus, self.phase)

    def _enter(self, phase: CalibrationPhase) -> None:
        self.phase = phase
        if phase is CalibrationPhase.STIMULUS:
            self.last_correct = None
            self.base = self.generator.centered()
            self._show(self.base)
        elif phase is CalibrationPhase.NOISE:
            self._show(self.generator.centered())
        elif phase is CalibrationPhase.PROBE:
            self._show(make_probe(self.base, self.modality, self.staircase.value, self.generator.rng))
        elif phase is CalibrationPhase.FEEDBACK:
            self._show(None)
            self._arm(config.CALIBRATION_TIMES_MS["feedback"], self._after_feedback)
            return
        else:
            self._show(None)

        if phase in _NEXT_PHASE:
            self._arm(config.CALIBRATION_TIMES_MS[phase.value], lambda: self._enter(_NEXT_PHASE[phase]))

    def _after_feedback(self) -> None:
        if self.staircase.finished:
            self._complete()
        else:
            self._enter(CalibrationPhase.STIMULUS)

    def _complete(self) -> None:
        self._generation += 1
        self.timers.cancel(self._handle)
        self._handle = None
        self.phase = CalibrationPhase.FINISHED
        self.shown = None
        self.result = {self.modality: self.staircase.value}
        logging.exp(
            f"Calibration done: {self.modality.value}  threshold={self.staircase.value:.4g}  "
            f"trials={self.staircase.n_trials}"
        )
        if self.on_complete is not None:
            self.on_complete(dict(self.result))


class AdaptiveCalibrator:
    """
    Runs staircases one modality at a time and accumulates their thresholds.

    `thresholds` is a private copy of the session's thresholds; each finished or
    ended run merges its modality into it and reports the partial map.
    """

    def __init__(
        self,
        session: config.SessionConfig,
        timers: TimerQueue,
        variant: StaircaseVariant = StaircaseVariant.LIMIT,
        rng: np.random.Generator | None = None,
        on_display: Callable[[Stimulus | None, CalibrationPhase], None] | None = None,
        on_calibration_complete: Callable[[dict[Modality, float]], None] | None = None,
    ) -> None:
        session.validate()
        self.session = session
        self.timers = timers
        self.variant = variant
        self.rng = rng if rng is not None else np.random.default_rng(session.seed)
        self.generator = StimulusGenerator.from_config(session, self.rng)
        self.on_display = on_display
        self.on_calibration_complete = on_calibration_complete
        self.thresholds = session.thresholds
        self.run: CalibrationRun | None = None

    @property
    def modalities(self) -> list[Modality]:
        return self.session.active_modalities

    def start(self, modality: Modality) -> CalibrationRun:
        if modality not in self.modalities:
            raise SessionStateError(f"Modality {modality.value} is not enabled")
        if self.run is not None and not self.run.finished:
            raise SessionStateError(f"Calibration for {self.run.modality.value} still running")
        self.run = CalibrationRun(
            modality,
            build_staircase(self.variant, modality, self.thresholds),
            self.generator,
            self.timers,
            on_display=self.on_display,
            on_complete=self._run_complete,
        )
        self.run.start()
        return self.run

    def respond(self, same: bool) -> bool | None:
        if self.run is None:
            return None
        return self.run.respond(same)

    def end(self) -> None:
        if self.run is not None:
            self.run.end()

    def _run_complete(self, partial: dict[Modality, float]) -> None:
        self.thresholds = self.thresholds.merged(partial)
        if self.on_calibration_complete is not None:
            self.on_calibration_complete(partial)
