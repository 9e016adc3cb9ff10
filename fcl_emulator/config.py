# fcl_emulator/config.py
"""
Settings for the FCL engine.

FclSettings holds the user-tunable preferences (thresholds, percentages,
absorption constants). CycleInputs holds the values that the caller supplies
fresh on every loop cycle (profile target/ISF/CR, limits, current IOB).
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

DATA_PATH = Path("data")
LEARNING_PATH = DATA_PATH / "fcl_learning.json"
SETTINGS_PATH = DATA_PATH / "fcl_settings.json"
REPORTS_PATH = Path("reports/last_run")


@dataclass
class FclSettings:
    # hypo protection (mmol/L)
    hypo_threshold_day: float = 4.0
    hypo_threshold_night: float = 4.5
    hypo_recovery_minutes: int = 45
    hypo_recovery_bg_range: float = 2.0
    hypo_recovery_aggressiveness: float = 0.9
    min_recovery_days: int = 2
    max_recovery_days: int = 5

    # dose scaling (%)
    peak_damping_pct: int = 50
    hypo_risk_pct: int = 30
    bolus_perc_day: int = 100
    bolus_perc_night: int = 70
    bolus_perc_early: int = 100
    bolus_perc_late: int = 100

    # meal detection
    carb_percentage: int = 100
    meal_detection_sensitivity: float = 0.5  # mmol/L unexplained rise in 15 min
    tau_absorption_minutes: int = 40
    meal_detection_cooldown_minutes: int = 45

    # learned factor bounds
    carb_isf_min_factor: float = 0.7
    carb_isf_max_factor: float = 1.3

    # day / night window ("HH:MM")
    night_start: str = "23:00"
    morning_start: str = "06:00"

    # persistent high BG
    persistent_enabled: bool = True
    persistent_day_threshold: float = 10.0
    persistent_night_threshold: float = 10.5
    persistent_day_max_bolus: float = 1.0
    persistent_night_max_bolus: float = 0.5
    persistent_cooldown_minutes: int = 60
    persistent_stability_limit: float = 0.6

    # extended bolus
    extended_steps: int = 3
    extended_step_interval_minutes: int = 5

    # engine limits
    min_history_samples: int = 4
    advice_min_history_samples: int = 10
    min_deliverable_dose: float = 0.05
    reserved_release_spacing_minutes: int = 10

    def is_night(self, now: datetime) -> bool:
        start = _minutes_of_day(self.night_start, 23 * 60)
        end = _minutes_of_day(self.morning_start, 6 * 60)
        current = now.hour * 60 + now.minute
        if end < start:
            # window wraps midnight
            return current >= start or current < end
        return start <= current <= end

    def hypo_threshold(self, now: datetime) -> float:
        return self.hypo_threshold_night if self.is_night(now) else self.hypo_threshold_day

    def bolus_aggressiveness(self, now: datetime) -> float:
        return float(self.bolus_perc_night if self.is_night(now) else self.bolus_perc_day)

    def persistent_threshold(self, now: datetime) -> float:
        return self.persistent_night_threshold if self.is_night(now) else self.persistent_day_threshold

    def persistent_max_bolus(self, now: datetime) -> float:
        return self.persistent_night_max_bolus if self.is_night(now) else self.persistent_day_max_bolus

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CycleInputs:
    target_bg: float  # mmol/L
    isf: float  # mmol/L per U
    carb_ratio: float  # g per U
    max_bolus: float  # U
    max_iob: float  # U
    current_iob: float = 0.0  # U
    aggressiveness: float = 100.0  # %
    dose_reduction: float = 0.0  # %, applied to the final dose

    def validate(self) -> str | None:
        """Return a description of the first invalid value, or None."""
        if self.isf <= 0:
            return f"invalid ISF {self.isf}"
        if self.carb_ratio <= 0:
            return f"invalid carb ratio {self.carb_ratio}"
        if self.max_bolus < 0 or self.max_iob <= 0:
            return f"invalid limits maxBolus={self.max_bolus} maxIOB={self.max_iob}"
        if not 0.0 <= self.dose_reduction <= 100.0:
            return f"invalid dose reduction {self.dose_reduction}%"
        return None


def load_settings(path: str | Path | None = None) -> FclSettings:
    """
    Read settings from a JSON object. Missing file -> defaults.
    Unknown keys are ignored (logged), values are coerced to the field type.
    """
    path = Path(path) if path else SETTINGS_PATH
    settings = FclSettings()
    if not path.exists():
        return settings

    with open(path, encoding="utf-8") as f:
        raw = json.load(f)

    known = {f.name: f for f in fields(FclSettings)}
    for key, value in raw.items():
        if key not in known:
            logger.warning("load_settings: unknown key %r ignored", key)
            continue
        default = getattr(settings, key)
        try:
            if isinstance(default, bool):
                value = value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes")
            elif isinstance(default, int):
                value = int(value)
            elif isinstance(default, float):
                value = float(value)
            else:
                value = str(value)
        except (TypeError, ValueError):
            logger.warning("load_settings: bad value for %s=%r, keeping %r", key, value, default)
            continue
        setattr(settings, key, value)
    return settings


def _minutes_of_day(text: str, fallback: int) -> int:
    try:
        parts = text.split(":")
        hour = int(parts[0])
        minute = int(parts[1]) if len(parts) > 1 else 0
        return hour * 60 + minute
    except (AttributeError, ValueError, IndexError):
        return fallback
