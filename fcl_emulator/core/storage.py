# fcl_emulator/core/storage.py
"""
Learning storage boundary.

The engine only talks to the LearningStorage protocol. Writes report
success or failure through StorageResult; they never raise into the
dosing cycle.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from fcl_emulator.fcl_structs import LearningProfile, MealOutcome

logger = logging.getLogger(__name__)

MAX_OUTCOMES = 1000


@dataclass(frozen=True)
class StorageResult:
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "StorageResult":
        return cls(True, None)

    @classmethod
    def failure(cls, error: str) -> "StorageResult":
        return cls(False, error)


class LearningStorage(Protocol):
    def save(self, profile: LearningProfile) -> StorageResult: ...

    def load(self) -> Optional[LearningProfile]: ...

    def save_outcome(self, outcome: MealOutcome) -> StorageResult: ...

    def load_outcomes(self) -> List[MealOutcome]: ...


class InMemoryLearningStorage:
    def __init__(self, max_outcomes: int = MAX_OUTCOMES) -> None:
        self.profile: Optional[LearningProfile] = None
        self.outcomes: List[MealOutcome] = []
        self.max_outcomes = max_outcomes

    def save(self, profile: LearningProfile) -> StorageResult:
        self.profile = LearningProfile.from_dict(profile.to_dict())
        return StorageResult.success()

    def load(self) -> Optional[LearningProfile]:
        if self.profile is None:
            return None
        return LearningProfile.from_dict(self.profile.to_dict())

    def save_outcome(self, outcome: MealOutcome) -> StorageResult:
        self.outcomes.append(outcome)
        del self.outcomes[: -self.max_outcomes]
        return StorageResult.success()

    def load_outcomes(self) -> List[MealOutcome]:
        return list(self.outcomes)


class JsonLearningStorage:
    """
    Profile and outcome history in one JSON document:
      {"profile": {...}, "outcomes": [{...}, ...]}
    Only the newest `max_outcomes` outcomes are kept.
    """

    def __init__(self, path: str | Path, max_outcomes: int = MAX_OUTCOMES) -> None:
        self.path = Path(path)
        self.max_outcomes = max_outcomes

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("JsonLearningStorage: cannot read %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> StorageResult:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            logger.warning("JsonLearningStorage: cannot write %s: %s", self.path, e)
            return StorageResult.failure(str(e))
        return StorageResult.success()

    def save(self, profile: LearningProfile) -> StorageResult:
        data = self._read()
        data["profile"] = profile.to_dict()
        return self._write(data)

    def load(self) -> Optional[LearningProfile]:
        raw = self._read().get("profile")
        if not isinstance(raw, dict):
            return None
        try:
            return LearningProfile.from_dict(raw)
        except (TypeError, ValueError) as e:
            logger.warning("JsonLearningStorage: bad profile in %s: %s", self.path, e)
            return None

    def save_outcome(self, outcome: MealOutcome) -> StorageResult:
        data = self._read()
        outcomes = data.get("outcomes") or []
        outcomes.append(outcome.to_dict())
        data["outcomes"] = outcomes[-self.max_outcomes :]
        return self._write(data)

    def load_outcomes(self) -> List[MealOutcome]:
        result = []
        for raw in self._read().get("outcomes") or []:
            try:
                result.append(MealOutcome.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("JsonLearningStorage: skipping bad outcome: %s", e)
        return result
