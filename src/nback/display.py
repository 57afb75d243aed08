"""
PsychoPy visual component construction and draw helpers, plus tone playback.
No clocks, no response logic, no I/O.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

from psychopy import sound, visual

from nback import config
from nback.config import Modality
from nback.stimulus import Cell, Stimulus

BOARD_SIZE: float = 0.8          # height units, longest side
STIMULUS_SCALE: float = 0.5      # fraction of a cell
COMPOSITE_SCALES: tuple[float, ...] = (1.0, 0.66, 0.33)
NEUTRAL_COLOR = "white"
FEEDBACK_COLORS: dict[str, str] = {
    "none": "grey",
    "hit": "green",
    "miss": "orange",
    "false_alarm": "red",
}
MODALITY_LABELS: dict[Modality, str] = {
    Modality.SPATIAL: "Position",
    Modality.AUDIO: "Audio",
    Modality.COLOR: "Color",
    Modality.SHAPE: "Shape",
}


@dataclass
class Stimuli:
    win: visual.Window
    board: visual.Rect
    grid_lines: list[visual.Line]
    shape: visual.ShapeStim
    status: visual.TextStim
    lag_watermark: visual.TextStim
    dev_info: visual.TextStim
    prompt: visual.TextStim
    buttons: dict[Modality, visual.TextStim]
    message: visual.TextStim
    board_w: float
    board_h: float
    cell_w: float
    cell_h: float


def build_stimuli(win: visual.Window, grid_rows: int, grid_cols: int, modalities: list[Modality]) -> Stimuli:
    """Construct all visual stimuli for a grid of the given size."""
    longest = max(grid_rows, grid_cols)
    board_w = BOARD_SIZE * grid_cols / longest
    board_h = BOARD_SIZE * grid_rows / longest
    cell_w = board_w / grid_cols
    cell_h = board_h / grid_rows
    font_h = 1.0 / 30

    board = visual.Rect(
        win, name="board", width=board_w, height=board_h, pos=(0, 0.05),
        fillColor=(-0.8, -0.8, -0.8), lineColor=(-0.5, -0.5, -0.5), autoLog=False,
    )
    grid_lines = []
    for c in range(1, grid_cols):
        x = -board_w / 2 + c * cell_w
        grid_lines.append(visual.Line(
            win, start=(x, 0.05 - board_h / 2), end=(x, 0.05 + board_h / 2),
            lineColor=(-0.5, -0.5, -0.5), autoLog=False,
        ))
    for r in range(1, grid_rows):
        y = 0.05 + board_h / 2 - r * cell_h
        grid_lines.append(visual.Line(
            win, start=(-board_w / 2, y), end=(board_w / 2, y),
            lineColor=(-0.5, -0.5, -0.5), autoLog=False,
        ))

    shape = visual.ShapeStim(
        win, name="shape", vertices="circle", size=1.0, fillColor=NEUTRAL_COLOR,
        lineWidth=0, autoLog=False,
    )
    status = visual.TextStim(
        win, name="status", pos=(0, 0.47), height=font_h, color="white", autoLog=False,
    )
    lag_watermark = visual.TextStim(
        win, name="lag_watermark", pos=(0, 0.05), height=board_h / 2, color="white",
        opacity=0.1, autoLog=False,
    )
    dev_info = visual.TextStim(
        win, name="dev_info", pos=(-board_w / 2, 0.05 + board_h / 2 + font_h), height=font_h * 0.7,
        color="yellow", alignText="left", anchorHoriz="left", autoLog=False,
    )
    prompt = visual.TextStim(
        win, name="prompt", pos=(0, -0.4), height=font_h, color="white", autoLog=False,
    )
    key_for = {m: k for k, m in config.RESPONSE_KEYS.items()}
    spacing = 0.25
    x0 = -spacing * (len(modalities) - 1) / 2
    buttons = {
        m: visual.TextStim(
            win, name=f"button_{m.value}", text=f"{MODALITY_LABELS[m]} ({key_for[m].upper()})",
            pos=(x0 + i * spacing, -0.42), height=font_h, color=FEEDBACK_COLORS["none"],
            autoLog=False,
        )
        for i, m in enumerate(modalities)
    }
    message = visual.TextStim(
        win, name="message", pos=(0, 0), height=font_h * 1.2, color="white",
        wrapWidth=1.2, autoLog=False,
    )
    return Stimuli(
        win=win, board=board, grid_lines=grid_lines, shape=shape, status=status,
        lag_watermark=lag_watermark, dev_info=dev_info, prompt=prompt, buttons=buttons,
        message=message, board_w=board_w, board_h=board_h, cell_w=cell_w, cell_h=cell_h,
    )


def cell_pos(stimuli: Stimuli, cell: Cell) -> tuple[float, float]:
    x = -stimuli.board_w / 2 + (cell.col + 0.5) * stimuli.cell_w
    y = 0.05 + stimuli.board_h / 2 - (cell.row + 0.5) * stimuli.cell_h
    return x, y


def polygon_vertices(radii: tuple[float, ...], size: float) -> list[tuple[float, float]]:
    """Polygon with one vertex per radius, first vertex pointing up."""
    n = len(radii)
    return [
        (r * size * math.cos(2 * math.pi * i / n + math.pi / 2),
         r * size * math.sin(2 * math.pi * i / n + math.pi / 2))
        for i, r in enumerate(radii)
    ]


def draw_board(stimuli: Stimuli) -> None:
    stimuli.board.draw()
    for line in stimuli.grid_lines:
        line.draw()


def draw_stimulus(
    stimuli: Stimuli, stimulus: Stimulus, color_enabled: bool, shape_enabled: bool,
) -> None:
    size = min(stimuli.cell_w, stimuli.cell_h) * STIMULUS_SCALE
    x, y = cell_pos(stimuli, stimulus.cell)
    x += stimulus.offset[0] * stimuli.board_w
    y += stimulus.offset[1] * stimuli.board_h
    radii = stimulus.radii if shape_enabled else (1.0,) * 48
    hues = stimulus.hues if color_enabled else ()
    scales = COMPOSITE_SCALES[:len(hues)] if hues else (1.0,)

    shape = stimuli.shape
    shape.pos = (x, y)
    for i, scale in enumerate(scales):
        shape.vertices = polygon_vertices(radii, size * scale)
        if hues:
            shape.colorSpace = "hsv"
            shape.fillColor = (hues[i], 0.8, 1.0)
        else:
            shape.colorSpace = "named"
            shape.fillColor = NEUTRAL_COLOR
        shape.draw()


def draw_buttons(stimuli: Stimuli, highlights: dict[Modality, str]) -> None:
    for m, button in stimuli.buttons.items():
        button.color = FEEDBACK_COLORS.get(highlights.get(m, "none"), FEEDBACK_COLORS["none"])
        button.draw()


def draw_text(stim: visual.TextStim, text: str) -> None:
    stim.text = text
    stim.draw()


def play_tone(frequency: float, duration_ms: float) -> None:
    """Fire-and-forget sine tone."""
    tone = sound.Sound(value=frequency, secs=duration_ms / 1000.0)
    tone.play()
