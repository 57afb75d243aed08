"""
All task constants and the immutable session configuration. No imports from other nback modules.
All time values are in seconds unless the name includes a unit suffix.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum


class ConfigurationError(ValueError):
    """Raised when a SessionConfig cannot be used to run a session."""


class SessionStateError(RuntimeError):
    """Scheduler or calibrator used out of order (e.g. started twice)."""


class Modality(str, Enum):
    SPATIAL = "spatial"
    AUDIO = "audio"
    COLOR = "color"
    SHAPE = "shape"


MODALITIES: tuple[Modality, ...] = (
    Modality.SPATIAL, Modality.AUDIO, Modality.COLOR, Modality.SHAPE,
)

# Stimulus domains
AUDIO_MIN_HZ: float = 200.0
AUDIO_MAX_HZ: float = 800.0
HUE_INTERVAL_MIN_DEG: float = 15.0
HUE_INTERVAL_MAX_DEG: float = 35.0
VERTEX_RADIUS_MIN: float = 0.6
VERTEX_RADIUS_MAX: float = 1.0
LURE_RADIUS_MIN: float = 0.1     # clamp applied after a shape lure
LURE_RADIUS_MAX: float = 1.0

# Trial timing (milliseconds)
MIN_STIMULUS_MS: int = 350
STIMULUS_ISI_FRACTION: float = 0.2
ISI_FLOOR_MARGIN_MS: int = 100

# Threshold floors (audio: cents, color: hue degrees, shape: radius fraction,
# spatial: normalized board distance)
THRESHOLD_FLOORS: dict[Modality, float] = {
    Modality.AUDIO: 5.0,
    Modality.COLOR: 2.0,
    Modality.SHAPE: 0.01,
    Modality.SPATIAL: 0.01,
}

# Calibration staircase
STEP_DOWN_FACTOR: float = 0.90
STEP_UP_FACTOR: float = 1.25
CONVERGING_TRIALS: int = 15
LIMIT_MAX_TRIALS: int = 20
CALIBRATION_TIMES_MS: dict[str, int] = {
    "stimulus": 600,
    "isi1": 750,
    "noise": 600,
    "isi2": 750,
    "probe": 600,
    "feedback": 1200,
}

# Post-session adaptation
ADAPT_ACCURACY_CUTOFF: float = 0.75
ADAPT_SHRINK_FACTOR: float = 0.95

# Keyboard layout
RESPONSE_KEYS: dict[str, Modality] = {
    "a": Modality.SPATIAL,
    "l": Modality.AUDIO,
    "f": Modality.COLOR,
    "j": Modality.SHAPE,
}
CALIBRATION_KEYS: dict[str, bool] = {"s": True, "d": False}   # key -> "same?"
QUIT_KEYS: list[str] = ["escape"]
END_RUN_KEY: str = "e"


class ColorMode(str, Enum):
    COMPOSITE = "composite"   # three-hue pattern
    SINGLE = "single"


class AccuracyFormula(str, Enum):
    HIT_RATE = "hit_rate"                     # hits / matches
    CORRECT_DECISIONS = "correct_decisions"   # (hits + correct rejections) / decisions
    HITS_OVER_RESPONSES = "hits_over_responses"  # hits / (matches + false alarms)


class AdaptationPolicy(str, Enum):
    SESSION_WIDE = "session_wide"
    PER_MODALITY = "per_modality"


class StaircaseVariant(str, Enum):
    CONVERGING = "converging"
    LIMIT = "limit"


@dataclass(frozen=True)
class CalibrationThresholds:
    """Just-noticeable differences, one per perturbable modality."""

    audio: float = 290.0     # cents
    color: float = 28.0      # hue degrees
    shape: float = 0.20      # radius fraction
    spatial: float = 0.10    # normalized board distance

    def __post_init__(self) -> None:
        # every value is clamped at its modality floor
        for m in MODALITIES:
            object.__setattr__(self, m.value, max(THRESHOLD_FLOORS[m], float(getattr(self, m.value))))

    def get(self, modality: Modality) -> float:
        return getattr(self, modality.value)

    def as_dict(self) -> dict[Modality, float]:
        return {m: self.get(m) for m in MODALITIES}

    def merged(self, partial: dict[Modality, float]) -> CalibrationThresholds:
        """Return a copy with the modalities in `partial` replaced; others keep their value."""
        return replace(self, **{m.value: float(v) for m, v in partial.items()})


@dataclass(frozen=True)
class SessionConfig:
    n_level: int = 2
    match_rate: float = 0.20
    lure_rate: float = 0.30
    isi_ms: int = 2500
    grid_rows: int = 7
    grid_cols: int = 7
    total_trials: int = 25
    enabled: frozenset[Modality] = frozenset({Modality.SPATIAL, Modality.AUDIO})
    thresholds: CalibrationThresholds = field(default_factory=CalibrationThresholds)
    shape_vertices: int = 6
    variable_n: bool = False
    variable_isi: bool = False
    isi_min_jitter_ms: int = 0
    isi_max_jitter_ms: int = 500
    color_mode: ColorMode = ColorMode.COMPOSITE
    feedback_enabled: bool = True
    dev_mode: bool = False
    calibration_enabled: bool = False
    accuracy_formula: AccuracyFormula = AccuracyFormula.CORRECT_DECISIONS
    adaptation_policy: AdaptationPolicy = AdaptationPolicy.SESSION_WIDE
    seed: int | None = None

    @property
    def active_modalities(self) -> list[Modality]:
        """Enabled modalities in canonical order."""
        return [m for m in MODALITIES if m in self.enabled]

    @property
    def stimulus_ms(self) -> int:
        return int(max(MIN_STIMULUS_MS, self.isi_ms * STIMULUS_ISI_FRACTION))

    def validate(self) -> None:
        if not self.enabled:
            raise ConfigurationError("At least one modality must be enabled")
        if self.n_level < 1:
            raise ConfigurationError(f"n_level must be >= 1, got {self.n_level}")
        for name in ("match_rate", "lure_rate"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")
        if self.match_rate + self.lure_rate > 1.0:
            raise ConfigurationError(
                f"match_rate + lure_rate must not exceed 1, got {self.match_rate + self.lure_rate}"
            )
        if self.grid_rows < 1 or self.grid_cols < 1:
            raise ConfigurationError(f"Grid must be at least 1x1, got {self.grid_rows}x{self.grid_cols}")
        if self.total_trials < 1:
            raise ConfigurationError(f"total_trials must be >= 1, got {self.total_trials}")
        if self.isi_ms <= 0:
            raise ConfigurationError(f"isi_ms must be positive, got {self.isi_ms}")
        if self.shape_vertices < 3:
            raise ConfigurationError(f"shape_vertices must be >= 3, got {self.shape_vertices}")
        if self.isi_min_jitter_ms < 0 or self.isi_max_jitter_ms < 0:
            raise ConfigurationError("Variable ISI band must not be negative")

    def as_dict(self) -> dict:
        """Plain-value snapshot for manifests and records."""
        out: dict = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "enabled":
                value = [m.value for m in self.active_modalities]
            elif f.name == "thresholds":
                value = {m.value: v for m, v in value.as_dict().items()}
            elif isinstance(value, Enum):
                value = value.value
            out[f.name] = value
        return out
