import csv
import logging
from datetime import datetime
from pathlib import Path

from fcl_emulator.fcl_structs import GlucoseSample

logger = logging.getLogger(__name__)

MGDL_PER_MMOL = 18.0
# anything above this cannot be mmol/L
MGDL_DETECT_THRESHOLD = 30.0


def parse_timestamp(raw: str) -> datetime | None:
    """ISO-8601 text or epoch milliseconds (seconds if small enough)."""
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        try:
            ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        # naive local time, same as the epoch branch
        return ts.astimezone().replace(tzinfo=None) if ts.tzinfo else ts
    if value > 1e11:
        value /= 1000.0
    return datetime.fromtimestamp(value)


def to_mmol(value: float) -> float:
    return value / MGDL_PER_MMOL if value > MGDL_DETECT_THRESHOLD else value


def load_samples(path: str | Path) -> list[GlucoseSample]:
    """
    Read a CGM trace with columns timestamp, glucose[, iob].
    Rows that cannot be parsed are skipped. The result is sorted and keeps
    only strictly increasing timestamps.
    """
    samples: list[GlucoseSample] = []
    with open(path, encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        for lineno, row in enumerate(reader, start=2):
            ts = parse_timestamp(row.get("timestamp", ""))
            try:
                glucose = float(row.get("glucose") or "")
            except ValueError:
                glucose = None
            if ts is None or glucose is None:
                logger.debug("load_samples: skipping line %d: %r", lineno, row)
                continue
            try:
                iob = float(row.get("iob") or 0.0)
            except ValueError:
                iob = 0.0
            samples.append(GlucoseSample(ts, to_mmol(glucose), iob))

    samples.sort(key=lambda s: s.timestamp)
    result: list[GlucoseSample] = []
    for s in samples:
        if result and s.timestamp <= result[-1].timestamp:
            continue
        result.append(s)
    if len(result) < len(samples):
        logger.info("load_samples: dropped %d duplicate timestamps", len(samples) - len(result))
    return result
