import json
import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from fcl_emulator.config import REPORTS_PATH

logger = logging.getLogger(__name__)

METRICS_PATH = REPORTS_PATH / "metrics.json"

RANGE_LOW = 3.9
RANGE_HIGH = 10.0


def time_in_range(glucose, low=RANGE_LOW, high=RANGE_HIGH):
    return float(((glucose >= low) & (glucose <= high)).mean())


def time_below(glucose, low=RANGE_LOW):
    return float((glucose < low).mean())


def time_above(glucose, high=RANGE_HIGH):
    return float((glucose > high).mean())


def coefficient_of_variation(glucose):
    mean = float(np.mean(glucose))
    return float(np.std(glucose) / mean) if mean > 0 else 0.0


def compute_metrics(rows: list[dict[str, Any]] | pd.DataFrame, out_path: str | Path | None = METRICS_PATH) -> dict:
    """
    Summary of a replay: glycaemic ranges, delivered insulin and how often
    each phase fired. Written as JSON when out_path is given.
    """
    df = rows if isinstance(rows, pd.DataFrame) else pd.DataFrame(rows)
    if df.empty:
        metrics: dict[str, Any] = {"count": 0}
    else:
        glucose = df["glucose"].to_numpy(dtype=float)
        delivered = df["delivered"].to_numpy(dtype=float)
        metrics = {
            "count": int(len(df)),
            "mean_glucose": float(np.mean(glucose)),
            "cv_glucose": coefficient_of_variation(glucose),
            "min_glucose": float(np.min(glucose)),
            "max_glucose": float(np.max(glucose)),
            "time_in_range": time_in_range(glucose),
            "time_below_range": time_below(glucose),
            "time_above_range": time_above(glucose),
            "total_delivered": float(delivered.sum()),
            "bolus_count": int((delivered > 0).sum()),
            "max_single_dose": float(delivered.max()),
            "meal_detections": int(df["meal_detected"].astype(bool).sum()),
            "phase_counts": {str(k): int(v) for k, v in df["phase"].value_counts().items()},
        }

    if out_path:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(metrics, indent=2), encoding="utf-8")
        logger.info("Metrics saved to %s", out_path)
    return metrics
