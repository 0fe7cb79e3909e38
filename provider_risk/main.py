"""Command-line entry point.

    provider-risk run --config config/pipeline.yaml
    provider-risk rethreshold --config config/pipeline.yaml --threshold 0.9
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import Optional

from provider_risk import __version__
from provider_risk.config import load_config
from provider_risk.errors import PipelineError
from provider_risk.pipeline import SCORES_FILE, MODEL_FILE, rethreshold, run_pipeline


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments with a ``command`` attribute ("run" or "rethreshold").
    """
    parser = argparse.ArgumentParser(
        description="Provider fraud-risk scoring pipeline"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log at DEBUG level",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Train, score and write all artifacts")
    rethr = sub.add_parser("rethreshold", help="Re-apply a threshold to persisted scores")
    for p in (run, rethr):
        p.add_argument(
            "--config", default=None,
            help="YAML config file (must set seed, threshold and the policy minimums)",
        )
        p.add_argument("--threshold", type=float, default=None, help="Override the publication threshold")
        p.add_argument("--output-dir", default=None, help="Override the output directory")

    run.add_argument("--data-dir", default=None, help="Override the data directory (or set FRAUD_DATA_DIR)")
    run.add_argument("--seed", type=int, default=None, help="Override the random seed")

    rethr.add_argument("--scores", default=None, help=f"Score table (default: <output-dir>/{SCORES_FILE})")
    rethr.add_argument("--model", default=None, help=f"Pickled model (default: <output-dir>/{MODEL_FILE})")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Run the requested command. Returns the process exit status."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    print("=" * 60)
    print(f"Provider Fraud-Risk Scoring Pipeline v{__version__}")
    print("=" * 60)
    start_time = time.time()

    try:
        if args.command == "run":
            config = load_config(
                args.config,
                threshold=args.threshold,
                output_dir=args.output_dir,
                data_dir=args.data_dir,
                seed=args.seed,
            )
            result = run_pipeline(config)
            print(f"\nCompleted in {time.time() - start_time:.1f}s")
            print(f"Providers scored: {len(result.scored):,}")
            print(f"Providers flagged: {result.partition.total_flagged:,}")
            for name, path in sorted(result.artifacts.items()):
                print(f"  {name}: {path}")
        else:
            config = load_config(args.config, threshold=args.threshold, output_dir=args.output_dir)
            scores = args.scores or os.path.join(config.output_dir, SCORES_FILE)
            model = args.model or os.path.join(config.output_dir, MODEL_FILE)
            partition = rethreshold(scores, model, config)
            print(f"\nCompleted in {time.time() - start_time:.1f}s")
            print(f"Providers flagged: {partition.total_flagged:,}")
    except PipelineError as e:
        print(f"\nERROR {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
