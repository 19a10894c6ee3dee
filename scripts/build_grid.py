"""Build the crime safety grid offline from police.uk street-level CSV exports.

Reads either a crime data directory (latest N month folders) or explicit CSV
files, folds them into a grid snapshot and writes the scored cells as JSON.

Usage:
  python scripts/build_grid.py build                                  # CRIME_DATA_DIR, last 3 months
  python scripts/build_grid.py build --data-dir crimedata --months 6  # Custom directory
  python scripts/build_grid.py build --files a.csv b.csv -o grid.json # Explicit files
  python scripts/build_grid.py build --weights crime=0.5,lighting=0.3 # Custom factor weights
  python scripts/build_grid.py percentiles                            # Breakpoints only
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from streetwise.config import CRIME_DATA_DIR, CRIME_DATA_MONTHS, CRIME_FILE_MATCH, GRID_RESOLUTION_DEG
from streetwise.crime_grid import CrimeSafetyGridBuilder, GridSnapshot
from streetwise.crime_loader import IngestStats, iter_crime_directory, iter_crime_files
from streetwise.grid import SpatialGridIndex
from streetwise.models import FactorWeights

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("streetwise.build_grid")


def parse_pairs(raw: str) -> dict[str, float]:
    """'crime=0.5,lighting=0.3' -> {'crime': 0.5, 'lighting': 0.3}"""
    out = {}
    for part in filter(None, (p.strip() for p in raw.split(","))):
        name, sep, value = part.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"expected name=value, got '{part}'")
        try:
            out[name.strip()] = float(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"'{value}' is not a number") from None
    return out


def build_snapshot(args) -> tuple[GridSnapshot, IngestStats]:
    stats = IngestStats()
    if args.files:
        records = iter_crime_files([Path(p) for p in args.files], stats=stats)
    else:
        records = iter_crime_directory(Path(args.data_dir), args.months, args.match, stats=stats)
    builder = CrimeSafetyGridBuilder(SpatialGridIndex(args.resolution))
    weights = FactorWeights(**args.weights) if args.weights else None
    snapshot = builder.build(records, severity_overrides=args.severity, factor_weights=weights)
    return snapshot, stats


def snapshot_to_dict(snapshot: GridSnapshot, stats: IngestStats) -> dict:
    bp = snapshot.breakpoints
    return {
        "built_at": snapshot.built_at,
        "records_folded": snapshot.records_folded,
        "rows_skipped": stats.skipped,
        "skip_reasons": dict(stats.reasons),
        "percentiles": None if bp is None else {
            "p25": bp.p25, "p50": bp.p50, "p75": bp.p75, "p90": bp.p90, "p95": bp.p95,
        },
        "factor_weights": snapshot.factor_weights.model_dump(),
        "cells": [c.model_dump() for c in snapshot.cells.values()],
    }


def cmd_build(args):
    snapshot, stats = build_snapshot(args)
    payload = json.dumps(snapshot_to_dict(snapshot, stats), indent=2 if args.pretty else None)
    if args.output:
        Path(args.output).write_text(payload)
        logger.info(f"Wrote {len(snapshot)} cells to {args.output}")
    else:
        print(payload)


def cmd_percentiles(args):
    snapshot, stats = build_snapshot(args)
    print(f"  Records folded: {snapshot.records_folded:,}  (skipped {stats.skipped:,})")
    print(f"  Grid cells:     {len(snapshot):,}")
    bp = snapshot.breakpoints
    if bp is None:
        print("  No crime data, every cell scores neutral")
        return
    print(f"  p25={bp.p25:g}  p50={bp.p50:g}  p75={bp.p75:g}  p90={bp.p90:g}  p95={bp.p95:g}")


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build the crime safety grid from police.uk street-level CSV files",
    )
    sub = parser.add_subparsers(dest="command")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--data-dir", default=CRIME_DATA_DIR, help="Directory of YYYY-MM month folders")
    common.add_argument("--files", nargs="+", help="Explicit CSV files (overrides --data-dir)")
    common.add_argument("--months", type=int, default=CRIME_DATA_MONTHS,
                        help=f"Most recent month folders to read (default: {CRIME_DATA_MONTHS})")
    common.add_argument("--match", default=CRIME_FILE_MATCH, help="Substring a CSV file name must contain")
    common.add_argument("--resolution", type=float, default=GRID_RESOLUTION_DEG, help="Cell size in degrees")
    common.add_argument("--weights", type=parse_pairs, help="Factor weights, e.g. crime=0.5,hazard=0.1")
    common.add_argument("--severity", type=parse_pairs, help="Crime severity overrides, e.g. Robbery=1.0")

    p_build = sub.add_parser("build", parents=[common], help="Build the grid and export cells as JSON")
    p_build.add_argument("-o", "--output", help="Write JSON here instead of stdout")
    p_build.add_argument("--pretty", action="store_true", help="Indent the JSON output")
    p_build.set_defaults(func=cmd_build)

    p_pct = sub.add_parser("percentiles", parents=[common], help="Print the count distribution breakpoints")
    p_pct.set_defaults(func=cmd_percentiles)
    return parser


def main(argv=None):
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":
    main()
