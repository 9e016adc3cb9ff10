# fcl_emulator/analysis/replay_runner.py
import csv
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Sequence

from fcl_emulator.config import CycleInputs, FclSettings
from fcl_emulator.core.fcl_algorithm import determine_bolus_fcl
from fcl_emulator.core.session import FclSession
from fcl_emulator.fcl_structs import GlucoseSample

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 48  # 4h of 5 min readings
# exponential IOB decay used when the trace carries no IOB column
IOB_DECAY_PER_5MIN = 0.93


def run_replay(
    samples: Sequence[GlucoseSample],
    inputs: CycleInputs,
    session: FclSession | None = None,
    settings: FclSettings | None = None,
    window: int = DEFAULT_WINDOW,
    simulate_iob: bool = False,
    trace_mode: bool = False,
) -> list[dict[str, Any]]:
    """
    Replay a CGM trace one cycle per sample, the way the control loop would.
    Returns one row per cycle.

    simulate_iob: ignore the trace IOB and track delivered doses instead
    (simple exponential decay), so the engine sees its own insulin.
    """
    settings = settings or FclSettings()
    session = session or FclSession.create(settings=settings)

    rows: list[dict[str, Any]] = []
    sim_iob = 0.0
    prev_ts = None
    for idx, sample in enumerate(samples):
        if simulate_iob and prev_ts is not None:
            minutes = (sample.timestamp - prev_ts).total_seconds() / 60.0
            sim_iob *= IOB_DECAY_PER_5MIN ** (minutes / 5.0)
        prev_ts = sample.timestamp

        history = list(samples[max(0, idx + 1 - window) : idx + 1])
        current_iob = sim_iob if simulate_iob else sample.iob
        if simulate_iob:
            history[-1] = GlucoseSample(sample.timestamp, sample.glucose, sim_iob)
        cycle_inputs = replace(inputs, current_iob=current_iob)

        out = determine_bolus_fcl(history, cycle_inputs, session, sample.timestamp, settings, trace_mode=trace_mode)
        advice, trace_steps = out if trace_mode else (out, None)

        delivered = advice.dose if advice.should_deliver else 0.0
        sim_iob += delivered

        row = {
            "idx": idx,
            "timestamp": sample.timestamp.isoformat(),
            "glucose": sample.glucose,
            "iob": current_iob,
            "dose": advice.dose,
            "delivered": delivered,
            "should_deliver": advice.should_deliver,
            "phase": advice.phase.value,
            "meal_detected": advice.meal_detected,
            "detected_carbs": advice.detected_carbs,
            "reserved_dose": advice.reserved_dose,
            "carbs_on_board": round(advice.carbs_on_board, 2),
            "predicted_peak": advice.predicted_peak,
            "confidence": advice.confidence,
            "reason": advice.reason,
        }
        if trace_steps is not None:
            row["trace"] = trace_steps
        rows.append(row)

    logger.info("run_replay: %d cycles, %.2fU delivered", len(rows), sum(r["delivered"] for r in rows))
    return rows


def write_rows_csv(rows: list[dict[str, Any]], out_csv_path: str | Path) -> Path | None:
    if not rows:
        return None
    out_csv_path = Path(out_csv_path)
    out_csv_path.parent.mkdir(parents=True, exist_ok=True)
    fieldnames = [k for k in rows[0].keys() if k != "trace"]
    with open(out_csv_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
    return out_csv_path
