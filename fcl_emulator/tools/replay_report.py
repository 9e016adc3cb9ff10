# fcl_emulator/tools/replay_report.py
"""
Replay a CGM trace through the FCL engine and write a report.

Output (in --out, default reports/last_run):
  replay.csv    one row per cycle
  metrics.json  summary metrics
  replay.png    glucose / dose plot (skipped with --no-plot)

Usage:
  python -m fcl_emulator.tools.replay_report trace.csv --target 6.0 --isf 2.5 --cr 10
"""

import argparse
import logging
from pathlib import Path

from fcl_emulator.analysis.metrics import compute_metrics
from fcl_emulator.analysis.replay_runner import run_replay, write_rows_csv
from fcl_emulator.config import LEARNING_PATH, REPORTS_PATH, CycleInputs, FclSettings, load_settings
from fcl_emulator.core.session import FclSession
from fcl_emulator.core.storage import JsonLearningStorage
from fcl_emulator.parsing.sample_loader import load_samples

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Replay a CGM trace through the FCL engine")
    p.add_argument("trace", help="CSV with timestamp,glucose[,iob]")
    p.add_argument("--out", default=str(REPORTS_PATH), help="Output directory")
    p.add_argument("--settings", default=None, help="Settings JSON (defaults if missing)")
    p.add_argument("--learning", default=None, help=f"Learning profile JSON (e.g. {LEARNING_PATH})")
    p.add_argument("--target", type=float, default=6.0, help="Target BG, mmol/L")
    p.add_argument("--isf", type=float, default=2.5, help="ISF, mmol/L per U")
    p.add_argument("--cr", type=float, default=10.0, help="Carb ratio, g per U")
    p.add_argument("--max-bolus", type=float, default=2.0)
    p.add_argument("--max-iob", type=float, default=4.0)
    p.add_argument("--aggressiveness", type=float, default=100.0)
    p.add_argument("--dose-reduction", type=float, default=0.0)
    p.add_argument("--simulate-iob", action="store_true", help="Track IOB from delivered doses")
    p.add_argument("--no-plot", action="store_true")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def run(args: argparse.Namespace) -> dict:
    settings = load_settings(args.settings) if args.settings else FclSettings()
    storage = JsonLearningStorage(args.learning) if args.learning else None
    session = FclSession.create(storage=storage, settings=settings)
    inputs = CycleInputs(
        target_bg=args.target,
        isf=args.isf,
        carb_ratio=args.cr,
        max_bolus=args.max_bolus,
        max_iob=args.max_iob,
        aggressiveness=args.aggressiveness,
        dose_reduction=args.dose_reduction,
    )

    samples = load_samples(args.trace)
    if not samples:
        logger.error("No samples in %s", args.trace)
        return {}

    rows = run_replay(samples, inputs, session=session, settings=settings, simulate_iob=args.simulate_iob)

    out_dir = Path(args.out)
    csv_path = write_rows_csv(rows, out_dir / "replay.csv")
    metrics = compute_metrics(rows, out_dir / "metrics.json")
    logger.info("Rows written to %s", csv_path)

    if not args.no_plot:
        from fcl_emulator.viz.plots_matplotlib import plot_replay

        png = plot_replay(rows, target=args.target, out_path=out_dir / "replay.png")
        logger.info("Plot written to %s", png)

    return metrics


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    metrics = run(args)
    if metrics:
        print(f"cycles={metrics['count']}  TIR={metrics.get('time_in_range', 0.0):.1%}  "
              f"delivered={metrics.get('total_delivered', 0.0):.2f}U")


if __name__ == "__main__":
    main()
