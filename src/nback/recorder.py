"""
Data recording: TrialRecord, PerformanceRecord, CsvWriter, TrialLogWriter, HistoryStore, write_manifest.
"""
from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import pandas as pd

from nback.config import MODALITIES, CalibrationThresholds, Modality, SessionConfig
from nback.scheduler import SessionSummary
from nback.scoring import Score, ScoreTracker, compute_accuracy
from nback.trial import NBackEvent

if TYPE_CHECKING:
    from nback.session import SessionInfo

CORRECT_REJECTION = "correct_rejection"


@dataclass
class TrialRecord:
    trial_n: int
    n: int
    cell_row: int
    cell_col: int
    frequency_hz: float
    hues: str
    radii: str
    match_spatial: int
    match_audio: int
    match_color: int
    match_shape: int
    lure_type: str
    outcome_spatial: str
    outcome_audio: str
    outcome_color: str
    outcome_shape: str
    subject_id: str


TRIAL_COLUMNS: list[str] = [
    "trial_n", "n", "cell_row", "cell_col", "frequency_hz", "hues", "radii",
    "match_spatial", "match_audio", "match_color", "match_shape", "lure_type",
    "outcome_spatial", "outcome_audio", "outcome_color", "outcome_shape", "subject_id",
]


def _join(values) -> str:
    return ";".join(f"{v:.3f}" for v in values)


def build_trial_record(event: NBackEvent, tracker: ScoreTracker, subject_id: str) -> TrialRecord:
    """Flatten a finished trial; outcome is "" for modalities off or not yet matchable."""
    outcomes: dict[Modality, str] = {}
    for m in MODALITIES:
        if m not in tracker.modalities or not event.matchable:
            outcomes[m] = ""
        else:
            outcomes[m] = tracker.outcome(event.id, m) or CORRECT_REJECTION
    stim = event.stimulus
    return TrialRecord(
        trial_n=event.id + 1,
        n=event.n,
        cell_row=stim.cell.row,
        cell_col=stim.cell.col,
        frequency_hz=round(stim.frequency, 3),
        hues=_join(stim.hues),
        radii=_join(stim.radii),
        match_spatial=int(event.matches(Modality.SPATIAL)),
        match_audio=int(event.matches(Modality.AUDIO)),
        match_color=int(event.matches(Modality.COLOR)),
        match_shape=int(event.matches(Modality.SHAPE)),
        lure_type=event.lure_type.value if event.lure_type is not None else "none",
        outcome_spatial=outcomes[Modality.SPATIAL],
        outcome_audio=outcomes[Modality.AUDIO],
        outcome_color=outcomes[Modality.COLOR],
        outcome_shape=outcomes[Modality.SHAPE],
        subject_id=subject_id,
    )


@dataclass(frozen=True)
class PerformanceRecord:
    """Snapshot of one completed session. Never mutated after creation."""

    date: str
    settings: dict
    score: Score
    accuracy: float
    modality_accuracy: dict[Modality, float]
    duration_ms: float
    match_counts: dict[Modality, int]
    total_matches: int
    total_non_matches: int
    correct_rejections: int
    accuracy_formula: str = ""

    def as_row(self) -> dict:
        """Flat mapping for the history CSV."""
        row = {
            "date": self.date,
            "n_level": self.settings["n_level"],
            "grid_rows": self.settings["grid_rows"],
            "grid_cols": self.settings["grid_cols"],
            "total_trials": self.settings["total_trials"],
            "modalities": "+".join(self.settings["enabled"]),
            "accuracy": round(self.accuracy, 6),
            "accuracy_formula": self.accuracy_formula,
            "duration_ms": round(self.duration_ms, 1),
            "hits": self.score.total_hits,
            "misses": self.score.total_misses,
            "false_alarms": self.score.total_false_alarms,
            "total_matches": self.total_matches,
            "total_non_matches": self.total_non_matches,
            "correct_rejections": self.correct_rejections,
        }
        for m in MODALITIES:
            row[f"{m.value}_threshold"] = self.settings["thresholds"][m.value]
            row[f"{m.value}_matches"] = self.match_counts.get(m, 0)
            row[f"{m.value}_false_alarms"] = self.score.false_alarms.get(m, 0)
            acc = self.modality_accuracy.get(m)
            row[f"{m.value}_accuracy"] = round(acc, 6) if acc is not None else ""
        return row


def build_performance_record(
    session: SessionConfig,
    summary: SessionSummary,
    date: datetime | None = None,
) -> PerformanceRecord | None:
    """Session-end handler: aborted sessions produce no record."""
    if not summary.completed:
        return None
    formula = session.accuracy_formula
    mods = session.active_modalities
    total_matches = sum(summary.matches.get(m, 0) for m in mods)
    total_non_matches = sum(summary.non_matches.get(m, 0) for m in mods)
    return PerformanceRecord(
        date=(date or datetime.now()).isoformat(timespec="seconds"),
        settings=session.as_dict(),
        score=summary.score.copy(),
        accuracy=compute_accuracy(summary.score, summary.matches, summary.non_matches, formula, mods),
        modality_accuracy={
            m: compute_accuracy(summary.score, summary.matches, summary.non_matches, formula, [m])
            for m in mods
        },
        duration_ms=summary.duration_ms,
        match_counts=dict(summary.match_counts),
        total_matches=total_matches,
        total_non_matches=total_non_matches,
        correct_rejections=total_non_matches - summary.score.total_false_alarms,
        accuracy_formula=formula.value,
    )


class CsvWriter:
    def __init__(self, path: Path, columns: list[str]) -> None:
        self._file = open(path, "w", newline="")
        self._writer = csv.DictWriter(self._file, fieldnames=columns)
        self._writer.writeheader()
        self._columns = columns

    def append(self, record: object) -> None:
        row = {k: getattr(record, k) for k in self._columns}
        self._writer.writerow(row)
        self._file.flush()

    def close(self) -> None:
        self._file.close()


class TrialLogWriter(CsvWriter):
    def __init__(self, path: Path) -> None:
        super().__init__(path, TRIAL_COLUMNS)
        self.written = 0

    def append(self, record: TrialRecord) -> None:  # type: ignore[override]
        super().append(record)
        self.written += 1

    def catch_up(
        self, events: list[NBackEvent], tracker: ScoreTracker, subject_id: str,
    ) -> list[tuple[NBackEvent, TrialRecord]]:
        """Write a row for every event past the last one written; returns what was written."""
        out = []
        for event in events[self.written:]:
            rec = build_trial_record(event, tracker, subject_id)
            self.append(rec)
            out.append((event, rec))
        return out


HISTORY_REQUIRED_COLUMNS: set[str] = {"date", "n_level", "accuracy"}


class HistoryStore:
    """Append-only CSV of PerformanceRecord rows."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def append(self, record: PerformanceRecord) -> None:
        frame = pd.DataFrame([record.as_row()])
        exists = self.path.exists()
        if not exists:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        frame.to_csv(self.path, mode="a", header=not exists, index=False)

    def load(self) -> pd.DataFrame:
        if not self.path.exists():
            return pd.DataFrame(columns=sorted(HISTORY_REQUIRED_COLUMNS))
        df = pd.read_csv(self.path)
        if not HISTORY_REQUIRED_COLUMNS.issubset(df.columns):
            raise ValueError(
                f"History file must have columns {HISTORY_REQUIRED_COLUMNS}; got {set(df.columns)}"
            )
        return df.reset_index(drop=True)

    def summary(self) -> pd.DataFrame:
        """One row per session: accuracy in percent plus the thresholds in force."""
        df = self.load()
        cols = ["date", "n_level", "modalities", "accuracy"] + [
            f"{m.value}_threshold" for m in MODALITIES
        ]
        out = df[[c for c in cols if c in df.columns]].copy()
        out.insert(0, "session", range(1, len(out) + 1))
        out["accuracy"] = (out["accuracy"].astype(float) * 100).round(1)
        return out


def write_manifest(
    run_dir: Path,
    session_info: "SessionInfo",
    session: SessionConfig,
    session_time: datetime,
    frame_rate: float,
) -> None:
    from nback import __version__

    manifest = {
        "nback_task_version": __version__,
        "subject_id": session_info.subject_id,
        "mode": session_info.mode,
        "session_time": session_time.isoformat(timespec="seconds"),
        "frame_rate_hz": round(frame_rate, 3),
        "session": session.as_dict(),
    }
    with open(run_dir / "manifest.json", "w") as f:
        json.dump(manifest, f, indent=2)


def record_to_dict(record: PerformanceRecord) -> dict:
    """JSON-friendly form of a PerformanceRecord (enum keys become strings)."""
    out = asdict(record)
    for key in ("modality_accuracy", "match_counts"):
        out[key] = {m.value: v for m, v in out[key].items()}
    out["score"] = {
        name: {m.value: v for m, v in counts.items()} for name, counts in out["score"].items()
    }
    return out


def load_thresholds(path: Path) -> CalibrationThresholds:
    """Thresholds saved by a previous session; defaults when none were saved."""
    path = Path(path)
    if not path.exists():
        return CalibrationThresholds()
    with open(path) as f:
        saved = json.load(f)
    partial = {Modality(name): float(v) for name, v in saved.items() if name in {m.value for m in MODALITIES}}
    return CalibrationThresholds().merged(partial)


def save_thresholds(path: Path, thresholds: CalibrationThresholds) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump({m.value: v for m, v in thresholds.as_dict().items()}, f, indent=2)
