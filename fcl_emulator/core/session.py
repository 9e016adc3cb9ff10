# fcl_emulator/core/session.py
"""
Per-patient engine state carried between cycles.

The caller owns the session and passes it into every determine_bolus_fcl()
call. Independent sessions never share state, so several simulations can
run side by side.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from fcl_emulator.config import FclSettings
from fcl_emulator.core.cob import ActiveCarbs
from fcl_emulator.core.learning import LearningEngine
from fcl_emulator.core.meal_detector import MealDetector
from fcl_emulator.core.storage import InMemoryLearningStorage, LearningStorage
from fcl_emulator.fcl_structs import ExtendedBolusState, PendingReservedBolus


@dataclass
class FclSession:
    learning: LearningEngine
    detector: MealDetector = field(default_factory=MealDetector)
    reservation: Optional[PendingReservedBolus] = None
    extended: ExtendedBolusState = field(default_factory=ExtendedBolusState)
    meals: List[ActiveCarbs] = field(default_factory=list)

    last_bolus_at: Optional[datetime] = None
    last_meal_detection_at: Optional[datetime] = None
    last_persistent_at: Optional[datetime] = None

    # meal-in-progress tracking for predictions
    meal_in_progress: bool = False
    meal_started_at: Optional[datetime] = None
    peak_detected: bool = False

    @classmethod
    def create(
        cls, storage: Optional[LearningStorage] = None, settings: Optional[FclSettings] = None
    ) -> "FclSession":
        storage = storage if storage is not None else InMemoryLearningStorage()
        return cls(learning=LearningEngine(storage, settings))

    def reset(self) -> None:
        """Forget bolus and meal state. The learning profile is kept."""
        self.detector.reset()
        self.reservation = None
        self.extended = ExtendedBolusState()
        self.meals.clear()
        self.last_bolus_at = None
        self.last_meal_detection_at = None
        self.last_persistent_at = None
        self.meal_in_progress = False
        self.meal_started_at = None
        self.peak_detected = False
