# fcl_emulator/viz/plots_matplotlib.py
import logging
from datetime import datetime
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)


def plot_replay(rows, target: float | None = None, out_path: str | Path | None = None):
    """
    rows: list of dict with keys timestamp (ISO), glucose, delivered, reserved_dose
    out_path: optional path to save PNG; if None, returns matplotlib Figure
    """
    if not rows:
        logger.info("plot_replay: no rows")
        return None

    ts = [datetime.fromisoformat(r["timestamp"]) for r in rows]
    glucose = np.array([float(r.get("glucose") or 0.0) for r in rows])
    delivered = np.array([float(r.get("delivered") or 0.0) for r in rows])
    reserved = np.array([float(r.get("reserved_dose") or 0.0) for r in rows])

    # import matplotlib only when plotting
    import matplotlib.pyplot as plt

    fig, (ax_bg, ax_dose) = plt.subplots(2, 1, figsize=(12, 6), sharex=True, height_ratios=[3, 1])

    ax_bg.plot(ts, glucose, color="tab:blue", linewidth=1.2, label="glucose")
    ax_bg.axhspan(3.9, 10.0, color="tab:green", alpha=0.08)
    if target is not None:
        ax_bg.axhline(target, color="tab:green", linestyle="--", linewidth=0.8, label="target")
    meal_idx = [i for i, r in enumerate(rows) if r.get("meal_detected")]
    if meal_idx:
        ax_bg.scatter([ts[i] for i in meal_idx], glucose[meal_idx], marker="^", color="tab:orange", label="meal")
    ax_bg.set_ylabel("mmol/L")
    ax_bg.legend(loc="upper right")
    ax_bg.set_title("FCL replay")

    ax_dose.bar(ts, delivered, width=0.003, color="tab:red", label="delivered")
    ax_dose.step(ts, reserved, where="post", color="tab:purple", linewidth=0.8, label="reserved")
    ax_dose.set_ylabel("U")
    ax_dose.legend(loc="upper right")

    fig.autofmt_xdate()
    plt.tight_layout()

    if out_path:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path, dpi=150)
        plt.close(fig)
        return out_path

    return fig
