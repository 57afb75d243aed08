"""
Trial loop state machine.

TrialScheduler owns the session state (history, score, trial index) and advances
it from a self-rescheduling chain of TimerQueue callbacks:

    IDLE -> PRESENTING -> ISI -> PRESENTING -> ... -> FINISHED

Every armed callback carries the generation it was armed in; finishing the session
bumps the generation so a callback that survives cancellation is a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np
from psychopy import logging

from nback import config
from nback.config import Modality, SessionConfig, SessionStateError
from nback.scoring import MISS, Score, ScoreTracker
from nback.stimulus import StimulusGenerator
from nback.timing import TimerQueue
from nback.trial import MatchLureAssigner, NBackEvent, sample_lag, valid_lags

NO_FEEDBACK = "none"


class SchedulerState(str, Enum):
    IDLE = "idle"
    PRESENTING = "presenting"
    ISI = "isi"
    FINISHED = "finished"


@dataclass(frozen=True)
class SessionSummary:
    score: Score
    match_counts: dict[Modality, int]
    completed: bool
    duration_ms: float
    trials_presented: int
    matches: dict[Modality, int] = field(default_factory=dict)
    non_matches: dict[Modality, int] = field(default_factory=dict)


class TrialScheduler:
    """Drives trials for one session; see module docstring for the state machine."""

    def __init__(
        self,
        session: SessionConfig,
        timers: TimerQueue,
        rng: np.random.Generator | None = None,
        on_display: Callable[[NBackEvent, bool], None] | None = None,
        on_session_end: Callable[[SessionSummary], None] | None = None,
    ) -> None:
        session.validate()
        self.session = session
        self.timers = timers
        self.rng = rng if rng is not None else np.random.default_rng(session.seed)
        self.on_display = on_display
        self.on_session_end = on_session_end

        self.generator = StimulusGenerator.from_config(session, self.rng)
        self.assigner = MatchLureAssigner(session, self.rng)
        self.tracker = ScoreTracker(session.active_modalities)
        self.lags = valid_lags(session.n_level) if session.variable_n else [session.n_level]

        self.history: list[NBackEvent] = []
        self.state = SchedulerState.IDLE
        self.visible = False
        self.highlights: dict[Modality, str] = {m: NO_FEEDBACK for m in session.active_modalities}
        self.summary: SessionSummary | None = None

        self._generation = 0
        self._tick_handle: int | None = None
        self._hide_handle: int | None = None
        self._start_ms = 0.0

    # ── Public API ──────────────────────────────────────────────────────────

    @property
    def trial_count(self) -> int:
        return len(self.history)

    @property
    def current(self) -> NBackEvent | None:
        return self.history[-1] if self.history else None

    @property
    def finished(self) -> bool:
        return self.state is SchedulerState.FINISHED

    def start(self) -> None:
        if self.state is not SchedulerState.IDLE:
            raise SessionStateError(f"Cannot start a session in state {self.state.value}")
        self._start_ms = self.timers.now_ms()
        logging.exp(
            f"Session start: N={self.session.n_level}  variable_n={self.session.variable_n}  "
            f"trials={self.session.total_trials}  "
            f"modalities={','.join(m.value for m in self.session.active_modalities)}"
        )
        self._tick()

    def respond(self, modality: Modality) -> str | None:
        """Participant claims the current trial is a match for `modality`."""
        if self.state not in (SchedulerState.PRESENTING, SchedulerState.ISI):
            return None
        outcome = self.tracker.respond(self.current, modality)
        if outcome is not None and self.session.feedback_enabled:
            self.highlights[modality] = outcome
        return outcome

    def quit(self) -> None:
        """Abort the session: no further ticks, completed=False."""
        if self.state is SchedulerState.FINISHED:
            return
        logging.exp(f"Session quit after {self.trial_count}/{self.session.total_trials} trials")
        self._finish(completed=False)

    # ── Timing ──────────────────────────────────────────────────────────────

    def next_isi_ms(self) -> float:
        isi = float(self.session.isi_ms)
        if self.session.variable_isi:
            lo, hi = self.session.isi_min_jitter_ms, self.session.isi_max_jitter_ms
            if lo < hi:
                magnitude = self.rng.uniform(lo, hi)
                isi += magnitude if self.rng.random() >= 0.5 else -magnitude
            else:
                isi += (self.rng.random() - 0.5) * 2 * hi
        return max(self.session.stimulus_ms + config.ISI_FLOOR_MARGIN_MS, isi)

    def next_lag(self) -> int:
        if not self.session.variable_n:
            return self.session.n_level
        return sample_lag(self.rng, self.lags)

    def _arm(self, delay_ms: float, callback: Callable[[], None]) -> int:
        generation = self._generation

        def fire() -> None:
            if generation != self._generation or self.state is SchedulerState.FINISHED:
                return
            callback()

        return self.timers.call_later(delay_ms, fire)

    # ── Callback chain ──────────────────────────────────────────────────────

    def _tick(self) -> None:
        missed = self.tracker.resolve_misses(self.current)
        self.highlights = {m: NO_FEEDBACK for m in self.session.active_modalities}
        if self.session.feedback_enabled:
            for m in missed:
                self.highlights[m] = MISS

        if self.trial_count >= self.session.total_trials:
            self._finish(completed=True)
            return

        n = self.next_lag()
        stimulus = self.generator.generate()
        event = self.assigner.assign(self.trial_count, n, self.history, stimulus)
        self.history.append(event)
        self.tracker.register(event)

        self.state = SchedulerState.PRESENTING
        self.visible = True
        logging.exp(f"Trial {event.id + 1:3d}/{self.session.total_trials}  {event.dev_info}")
        if self.on_display is not None:
            self.on_display(event, True)

        self._hide_handle = self._arm(self.session.stimulus_ms, self._hide)
        self._tick_handle = self._arm(self.next_isi_ms(), self._tick)

    def _hide(self) -> None:
        self.visible = False
        self.state = SchedulerState.ISI
        if self.on_display is not None and self.current is not None:
            self.on_display(self.current, False)

    def _finish(self, completed: bool) -> None:
        self._generation += 1
        self.timers.cancel(self._tick_handle)
        self.timers.cancel(self._hide_handle)
        self._tick_handle = self._hide_handle = None
        self.state = SchedulerState.FINISHED
        self.visible = False

        self.summary = SessionSummary(
            score=self.tracker.score.copy(),
            match_counts=dict(self.assigner.match_counts),
            completed=completed,
            duration_ms=self.timers.now_ms() - self._start_ms,
            trials_presented=self.trial_count,
            matches=dict(self.tracker.matches),
            non_matches=dict(self.tracker.non_matches),
        )
        score = self.summary.score
        logging.exp(
            f"Session end: completed={completed}  hits={score.total_hits}  "
            f"misses={score.total_misses}  false_alarms={score.total_false_alarms}  "
            f"duration={self.summary.duration_ms:.0f} ms"
        )
        if self.on_session_end is not None:
            self.on_session_end(self.summary)

