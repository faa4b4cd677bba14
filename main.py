"""
Indoor tracker command line

Subcommands:
  fit     Fit an anchor's cubic path-loss curve from a CSV of rss,distance
  locate  Single-shot least-squares position from one scan
  track   Run a tracking session over a JSON-lines scan log

Exit codes: 0 success, 10 InsufficientAnchors, 11 ModelUnavailable,
12 InsufficientSamples, 20 SingularSystem, 21 IllConditioned,
22 SingularDesign, 30 FilterDivergence, 2 bad input.
"""

import sys
import csv
import json
import logging
import argparse
from pathlib import Path
from typing import List, Optional, Tuple

import config
from ipt_core.errors import TrackerError, EXIT_SUCCESS, EXIT_USAGE
from ipt_core.calibration import InMemoryCalibrationStore, PathLossFitter, fit_path_loss
from ipt_core.localization import (
    ALGORITHMS,
    InMemoryAnchorRegistry,
    LSSolverConfig,
    TrackingPipeline,
    TrackingSession,
)
from ipt_core.proto import ScanBatch, PositionEstimate
from ipt_core.metrics import get_metrics

logger = logging.getLogger(__name__)


# =============================================================================
# Input loading
# =============================================================================


def load_samples_csv(path: Path) -> List[Tuple[float, float]]:
    """(rss, distance) pairs from a CSV with an rss,distance header."""
    samples = []
    with open(path, newline='') as f:
        for row in csv.DictReader(f):
            samples.append((float(row['rss']), float(row['distance'])))
    return samples


def load_registry(path: Path) -> InMemoryAnchorRegistry:
    """Anchors from a JSON list (or {"anchors": [...]}) of anchor records."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get('anchors', [])
    return InMemoryAnchorRegistry.from_records(data)


def load_store(path: Path) -> InMemoryCalibrationStore:
    """Path-loss models from a JSON mapping of anchor id to coefficients."""
    with open(path) as f:
        return InMemoryCalibrationStore.from_dict(json.load(f))


def load_scan(path: Path) -> ScanBatch:
    with open(path) as f:
        return ScanBatch.from_dict(json.load(f))


def iter_scans(path: Path):
    """One ScanBatch per non-empty line of a JSON-lines file."""
    with open(path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            batch = ScanBatch.from_dict(json.loads(line))
            if batch.sequence is None:
                batch.sequence = line_no
            yield batch


def write_coefficients(path: Path, store: InMemoryCalibrationStore):
    """Merge the store's models into a coefficients JSON file."""
    existing = {}
    if path.exists():
        with open(path) as f:
            existing = json.load(f)
    existing.update(store.to_dict())
    with open(path, 'w') as f:
        json.dump(existing, f, indent=2)
    logger.info("Coefficients written to %s", path)


# =============================================================================
# Subcommands
# =============================================================================


def cmd_fit(args) -> int:
    store = InMemoryCalibrationStore()

    if args.manual is not None:
        model = store.put(args.anchor_id, args.manual)
        coefficients = model.coefficients
    else:
        samples = load_samples_csv(args.samples)
        for rss, distance in samples:
            store.add_measurement(args.anchor_id, rss, distance)
        coefficients = fit_path_loss(args.anchor_id, store=store, fitter=PathLossFitter())

    a, b, c, d = coefficients
    print(f"anchor {args.anchor_id}: d = {a:.6g} + {b:.6g}*r + {c:.6g}*r^2 + {d:.6g}*r^3")

    if args.coefficients_out is not None:
        write_coefficients(args.coefficients_out, store)
    return EXIT_SUCCESS


def cmd_locate(args) -> int:
    session_config = config.build_session_config()
    session_config.solver_config = LSSolverConfig(
        algorithm=args.algorithm,
        weighting=args.weighting,
        min_quality=session_config.solver_config.min_quality,
    )
    pipeline = TrackingPipeline(load_registry(args.anchors), load_store(args.coefficients),
                                session_config)

    solution = pipeline.locate(load_scan(args.scan), args.session_anchor)
    x, y = solution.position
    print(f"{solution.algorithm}: ({x:.3f}, {y:.3f}) "
          f"residual={solution.residual_m:.3f} quality={solution.quality:.3e}")
    return EXIT_SUCCESS


def _print_estimate(estimate: PositionEstimate):
    if estimate.has_valid_fix:
        x, y = estimate.position
        print(f"tick {estimate.tick:4d} {estimate.fix_type.name:8s} "
              f"({x:8.3f}, {y:8.3f}) trace(P)={estimate.covariance_trace:.4f}")
    else:
        print(f"tick {estimate.tick:4d} NO_FIX   {estimate.error_reason} "
              f"(code {estimate.error_code})")


def cmd_track(args) -> int:
    print_interval = max(1, config.OUTPUT_CONFIG["print_interval"])
    session = TrackingSession(
        load_registry(args.anchors),
        load_store(args.coefficients),
        args.session_anchor,
        config.build_session_config(),
    )

    last_error = EXIT_SUCCESS
    located = 0
    for batch in iter_scans(args.scans):
        estimate = session.process(batch)
        if estimate.has_valid_fix:
            located += 1
        else:
            last_error = estimate.error_code
        if args.json:
            print(json.dumps(estimate.to_dict()))
        elif estimate.tick % print_interval == 0:
            _print_estimate(estimate)

    logger.info("Tracked %d ticks, %d located", session.tick, located)
    if args.summary or config.OUTPUT_CONFIG["print_metrics_summary"]:
        get_metrics().print_summary()

    return EXIT_SUCCESS if located > 0 else last_error


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Wi-Fi RSS indoor tracker (WCLS + EKF)')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='enable debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    fit = sub.add_parser('fit', help='fit a cubic path-loss curve')
    fit.add_argument('--anchor-id', type=int, required=True)
    source = fit.add_mutually_exclusive_group(required=True)
    source.add_argument('--samples', type=Path, help='CSV with rss,distance columns')
    source.add_argument('--manual', type=float, nargs=4, metavar=('A', 'B', 'C', 'D'),
                        help='store these coefficients instead of fitting')
    fit.add_argument('--coefficients-out', type=Path, default=None,
                     help='JSON file to merge the model into')
    fit.set_defaults(func=cmd_fit)

    for name, func, help_text in (
        ('locate', cmd_locate, 'single-shot least-squares fix'),
        ('track', cmd_track, 'EKF tracking over a scan log'),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('--anchors', type=Path, required=True, help='anchor registry JSON')
        p.add_argument('--coefficients', type=Path, required=True, help='path-loss models JSON')
        p.add_argument('--session-anchor', type=int, required=True,
                       help='anchor id whose curve converts every RSS')
        p.set_defaults(func=func)

    locate = sub.choices['locate']
    locate.add_argument('--scan', type=Path, required=True, help='one scan as JSON')
    locate.add_argument('--algorithm', choices=ALGORITHMS,
                        default=config.INITIALISER_CONFIG['algorithm'])
    locate.add_argument('--weighting', choices=('source', 'gls'),
                        default=config.INITIALISER_CONFIG['weighting'])

    track = sub.choices['track']
    track.add_argument('--scans', type=Path, required=True, help='JSON-lines scan log')
    track.add_argument('--json', action='store_true', help='print estimates as JSON lines')
    track.add_argument('--summary', action='store_true', help='print metrics summary')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.LOGGING_CONFIG["level"]),
        format=config.LOGGING_CONFIG["format"]
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        return args.func(args)
    except TrackerError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return e.exit_code
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.error("Bad input: %s", e)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
