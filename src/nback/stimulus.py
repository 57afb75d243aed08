"""
Stimulus value types and the random stimulus generator.
Pure with respect to the injected numpy Generator; no clocks, no rendering.
"""
from __future__ import annotations

from dataclasses import dataclass, replace

import numpy as np

from nback import config
from nback.config import ColorMode, Modality


@dataclass(frozen=True)
class Cell:
    row: int
    col: int


@dataclass(frozen=True)
class Stimulus:
    """One value per modality for a single trial.

    hues holds three ascending angles in composite mode, one angle in single mode.
    radii are the polygon vertex radii in [0, 1].
    offset is a displacement in normalized board units; only calibration moves it.
    """

    cell: Cell
    frequency: float
    hues: tuple[float, ...]
    radii: tuple[float, ...]
    offset: tuple[float, float] = (0.0, 0.0)

    def value(self, modality: Modality):
        if modality is Modality.SPATIAL:
            return self.cell
        if modality is Modality.AUDIO:
            return self.frequency
        if modality is Modality.COLOR:
            return self.hues
        return self.radii

    def with_value(self, modality: Modality, value) -> Stimulus:
        """Return a copy with one modality's value replaced."""
        name = {
            Modality.SPATIAL: "cell",
            Modality.AUDIO: "frequency",
            Modality.COLOR: "hues",
            Modality.SHAPE: "radii",
        }[modality]
        return replace(self, **{name: value})


def random_hues(rng: np.random.Generator, color_mode: ColorMode = ColorMode.COMPOSITE) -> tuple[float, ...]:
    """Base hue plus two offsets at a random interval, sorted ascending."""
    base = float(rng.uniform(0.0, 360.0))
    if color_mode is ColorMode.SINGLE:
        return (base,)
    interval = float(rng.uniform(config.HUE_INTERVAL_MIN_DEG, config.HUE_INTERVAL_MAX_DEG))
    hues = [(base - interval) % 360.0, base, (base + interval) % 360.0]
    return tuple(sorted(hues))


def random_radii(rng: np.random.Generator, n_vertices: int) -> tuple[float, ...]:
    radii = rng.uniform(config.VERTEX_RADIUS_MIN, config.VERTEX_RADIUS_MAX, size=n_vertices)
    return tuple(float(r) for r in radii)


class StimulusGenerator:
    """Produces independent uniformly random stimuli.

    Every modality gets a value whether or not it is enabled, so the draw
    sequence for a given seed does not depend on which modalities are active.
    """

    def __init__(
        self,
        rng: np.random.Generator,
        grid_rows: int,
        grid_cols: int,
        shape_vertices: int,
        color_mode: ColorMode = ColorMode.COMPOSITE,
    ) -> None:
        self.rng = rng
        self.grid_rows = grid_rows
        self.grid_cols = grid_cols
        self.shape_vertices = shape_vertices
        self.color_mode = color_mode

    @classmethod
    def from_config(cls, session: config.SessionConfig, rng: np.random.Generator) -> StimulusGenerator:
        return cls(
            rng,
            grid_rows=session.grid_rows,
            grid_cols=session.grid_cols,
            shape_vertices=session.shape_vertices,
            color_mode=session.color_mode,
        )

    def generate(self) -> Stimulus:
        cell = Cell(
            row=int(self.rng.integers(0, self.grid_rows)),
            col=int(self.rng.integers(0, self.grid_cols)),
        )
        frequency = float(self.rng.uniform(config.AUDIO_MIN_HZ, config.AUDIO_MAX_HZ))
        hues = random_hues(self.rng, self.color_mode)
        radii = random_radii(self.rng, self.shape_vertices)
        return Stimulus(cell=cell, frequency=frequency, hues=hues, radii=radii)

    def centered(self) -> Stimulus:
        """Random stimulus pinned to the centre cell (calibration presents at the centre)."""
        stim = self.generate()
        return replace(stim, cell=Cell(self.grid_rows // 2, self.grid_cols // 2))
