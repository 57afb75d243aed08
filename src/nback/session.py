"""
Session initialisation: dialog, screen setup, output directory and instruction display.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import pyglet
from psychopy import core, event as psy_event, gui, monitors, visual

from nback import config
from nback.config import (
    AccuracyFormula,
    AdaptationPolicy,
    CalibrationThresholds,
    ColorMode,
    ConfigurationError,
    Modality,
    SessionConfig,
    StaircaseVariant,
)

MODES: list[str] = ["train", "calibrate", "history"]

INSTRUCTIONS: list[str] = [
    "Each trial shows a stimulus on the grid and may play a tone.",
    "Press a modality's key when its stimulus matches the one shown N trials earlier.",
    "Some stimuli are lures: very close to the N-back stimulus, but not the same. Do not respond to them.",
    "Keys: A = position, L = audio, F = color, J = shape. Escape quits.",
]
CALIBRATION_INSTRUCTIONS: list[str] = [
    "You will see (or hear) a stimulus, a distractor, then a final stimulus.",
    "Press S if the final stimulus is the same as the first, D if it is different.",
    "The difference starts tiny and grows until you can spot it. Press E to end a run early.",
]


@dataclass
class SessionInfo:
    subject_id: str
    mode: str                  # "train" | "calibrate" | "history"
    show_instructions: bool
    staircase: StaircaseVariant


def _yes(value) -> bool:
    return str(value).strip().lower() in ("yes", "y", "true", "1")


def parse_modalities(text: str) -> frozenset[Modality]:
    names = [t.strip().lower() for t in str(text).replace("+", ",").split(",") if t.strip()]
    try:
        return frozenset(Modality(name) for name in names)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown modality in {text!r}") from exc


def show_dialog(thresholds: CalibrationThresholds) -> tuple[SessionInfo, SessionConfig]:
    """Present the startup dialog and return (SessionInfo, SessionConfig)."""
    defaults = SessionConfig(thresholds=thresholds)
    fields = {
        "Subject ID": "XXX000",
        "Mode": MODES,
        "N level": defaults.n_level,
        "Match rate": defaults.match_rate,
        "Lure rate": defaults.lure_rate,
        "ISI (ms)": defaults.isi_ms,
        "Grid rows": defaults.grid_rows,
        "Grid cols": defaults.grid_cols,
        "Trials": defaults.total_trials,
        "Modalities": ",".join(m.value for m in defaults.active_modalities),
        "Shape vertices": defaults.shape_vertices,
        "Color pattern": [m.value for m in ColorMode],
        "Variable N? (yes/no)": "no",
        "Variable ISI? (yes/no)": "no",
        "ISI jitter min (ms)": defaults.isi_min_jitter_ms,
        "ISI jitter max (ms)": defaults.isi_max_jitter_ms,
        "Calibrate first? (yes/no)": "no",
        "Staircase": [v.value for v in StaircaseVariant][::-1],
        "Accuracy formula": [f.value for f in AccuracyFormula][::-1],
        "Adaptation": [p.value for p in AdaptationPolicy],
        "Feedback? (yes/no)": "yes",
        "Dev mode? (yes/no)": "no",
        "Seed (blank = random)": "",
        "Show instructions? (yes/no)": "yes",
    }
    dlg = gui.DlgFromDict(dictionary=fields, title="N-Back Task")
    if not dlg.OK:
        core.quit()

    seed_text = str(fields["Seed (blank = random)"]).strip()
    session = SessionConfig(
        n_level=int(fields["N level"]),
        match_rate=float(fields["Match rate"]),
        lure_rate=float(fields["Lure rate"]),
        isi_ms=int(fields["ISI (ms)"]),
        grid_rows=int(fields["Grid rows"]),
        grid_cols=int(fields["Grid cols"]),
        total_trials=int(fields["Trials"]),
        enabled=parse_modalities(fields["Modalities"]),
        thresholds=thresholds,
        shape_vertices=int(fields["Shape vertices"]),
        variable_n=_yes(fields["Variable N? (yes/no)"]),
        variable_isi=_yes(fields["Variable ISI? (yes/no)"]),
        isi_min_jitter_ms=int(fields["ISI jitter min (ms)"]),
        isi_max_jitter_ms=int(fields["ISI jitter max (ms)"]),
        color_mode=ColorMode(fields["Color pattern"]),
        feedback_enabled=_yes(fields["Feedback? (yes/no)"]),
        dev_mode=_yes(fields["Dev mode? (yes/no)"]),
        calibration_enabled=_yes(fields["Calibrate first? (yes/no)"]),
        accuracy_formula=AccuracyFormula(fields["Accuracy formula"]),
        adaptation_policy=AdaptationPolicy(fields["Adaptation"]),
        seed=int(seed_text) if seed_text else None,
    )
    info = SessionInfo(
        subject_id=str(fields["Subject ID"]),
        mode=str(fields["Mode"]),
        show_instructions=_yes(fields["Show instructions? (yes/no)"]),
        staircase=StaircaseVariant(fields["Staircase"]),
    )
    return info, session


def setup_screen() -> tuple[list[int], visual.Window]:
    """Create and return (win_res, win)."""
    display = pyglet.canvas.get_display()
    screens = display.get_screens()
    win_res = [screens[-1].width, screens[-1].height]
    exp_mon = monitors.Monitor("exp_mon")
    exp_mon.setSizePix(win_res)
    win = visual.Window(
        size=win_res,
        screen=len(screens) - 1,
        allowGUI=True,
        fullscr=True,
        monitor=exp_mon,
        units="height",
        color=(-0.6, -0.6, -0.6),
    )
    return win_res, win


def make_run_dir(data_dir: Path, session_info: SessionInfo, session_time: datetime) -> Path:
    """Create and return data/{subject_id}_{mode}_{YYYYMMDDTHHMMSS}/."""
    ts = session_time.strftime("%Y%m%dT%H%M%S")
    run_dir = data_dir / f"{session_info.subject_id}_{session_info.mode}_{ts}"
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def display_instructions(win: visual.Window, stimuli, pages: list[str]) -> None:
    """Show instruction pages one at a time; space advances, escape quits."""
    psy_event.clearEvents()
    for page in pages:
        while True:
            stimuli.message.text = f"{page}\n\nPress SPACE to continue."
            stimuli.message.draw()
            win.flip()
            pressed = psy_event.getKeys(keyList=["space"] + config.QUIT_KEYS)
            if not pressed:
                continue
            if pressed[0] in config.QUIT_KEYS:
                core.quit()
            break
