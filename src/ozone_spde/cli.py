"""
Command-Line Interface for OZONE-SPDE.

Provides CLI commands for cross-validation and grid prediction:
    ozone-spde cv:      Station-level k-fold cross-validation
    ozone-spde predict: Posterior mean/sd surface on a prediction grid
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--data', '-d',
        type=str,
        required=True,
        help='Path to CSV file with station observations',
    )
    parser.add_argument(
        '--download-url',
        type=str,
        default=None,
        help='URL to fetch the observation table from if it is missing',
    )
    parser.add_argument(
        '--config', '-c',
        type=str,
        default=None,
        help='JSON configuration file',
    )
    parser.add_argument(
        '--n-times',
        type=int,
        default=None,
        help='Number of leading days to keep',
    )
    parser.add_argument(
        '--transform',
        type=str,
        choices=['sqrt', 'log', 'identity'],
        default=None,
        help='Response transform',
    )
    parser.add_argument(
        '--max-iter',
        type=int,
        default=400,
        help='Maximum iterations of the hyperparameter mode search',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output',
    )


def _load_config(args: argparse.Namespace):
    from ozone_spde.config import ModelConfig

    config = ModelConfig.from_json(args.config) if args.config else ModelConfig()
    if args.n_times is not None:
        config.n_times = args.n_times
    if args.transform is not None:
        config.response_transform = args.transform
    return config


def _load_observations(args: argparse.Namespace, config):
    from ozone_spde.data import load_table, prepare_observations
    from ozone_spde.data_check import ensure_dataset

    path = Path(args.data)
    if args.download_url:
        ensure_dataset(path, args.download_url)
    return prepare_observations(load_table(path), config)


def cross_validate(argv: Optional[List[str]] = None) -> None:
    """Run station-level k-fold cross-validation."""
    parser = argparse.ArgumentParser(
        description='Cross-validate the spatio-temporal ozone model by station',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_arguments(parser)
    parser.add_argument(
        '--folds', '-k',
        type=int,
        default=None,
        help='Number of folds (config value if omitted)',
    )
    parser.add_argument(
        '--seed',
        type=int,
        default=None,
        help='Seed for the fold assignment (config value if omitted)',
    )
    parser.add_argument(
        '--n-jobs',
        type=int,
        default=None,
        help='Worker threads for the fold loop',
    )
    parser.add_argument(
        '--fold-timeout',
        type=float,
        default=None,
        help='Seconds allowed per fold',
    )
    parser.add_argument(
        '--fail-fast',
        action='store_true',
        help='Abort on the first failed fold instead of skipping it',
    )
    parser.add_argument(
        '--output', '-o',
        type=str,
        default=None,
        help='Output directory for metrics and predictions',
    )

    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    logger.info("Starting cross-validation")

    # Import here to avoid slow imports for --help
    from ozone_spde.cross_validation import CrossValidator
    from ozone_spde.engine import GaussianSPDEEngine

    config = _load_config(args)
    if args.folds is not None:
        config.cv.n_folds = args.folds
    if args.seed is not None:
        config.cv.seed = args.seed
    if args.n_jobs is not None:
        config.cv.n_jobs = args.n_jobs
    if args.fold_timeout is not None:
        config.cv.fold_timeout = args.fold_timeout
    if args.fail_fast:
        config.cv.failure_policy = "raise"
    config.validate()

    data = _load_observations(args, config)
    validator = CrossValidator(config, engine=GaussianSPDEEngine(max_iter=args.max_iter))
    result = validator.run(data, show_progress=True)

    print(result.report())

    if args.output:
        output_dir = Path(args.output)
        output_dir.mkdir(parents=True, exist_ok=True)
        result.per_fold.to_csv(output_dir / "cv_metrics.csv")
        result.predictions.to_csv(output_dir / "cv_predictions.csv", index=False)
        config.save(output_dir / "config.json")
        logger.info(f"Results saved to {output_dir}")

    if result.n_succeeded == 0:
        logger.error("All folds failed")
        sys.exit(1)


def predict(argv: Optional[List[str]] = None) -> None:
    """Predict the ozone surface on a grid for one day."""
    parser = argparse.ArgumentParser(
        description='Posterior prediction of the ozone surface on a grid',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_arguments(parser)
    parser.add_argument(
        '--grid', '-g',
        type=str,
        required=True,
        help='Path to CSV file with prediction grid points',
    )
    parser.add_argument(
        '--time-slice', '-t',
        type=int,
        default=None,
        help='1-based time index to predict (config value if omitted)',
    )
    parser.add_argument(
        '--output', '-o',
        type=str,
        required=True,
        help='Path for output predictions CSV',
    )

    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    # Import here to avoid slow imports for --help
    from ozone_spde.data import load_table, prepare_grid
    from ozone_spde.engine import GaussianSPDEEngine
    from ozone_spde.prediction import GridPredictor

    config = _load_config(args)
    if args.time_slice is not None:
        config.prediction_time = args.time_slice
    config.validate()

    data = _load_observations(args, config)
    grid = prepare_grid(load_table(args.grid), config)

    predictor = GridPredictor(config, engine=GaussianSPDEEngine(max_iter=args.max_iter))
    result = predictor.run(data, grid)
    print(result.summary)

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    result.to_csv(output)
    logger.info(f"Predictions saved to {output}")


def main() -> None:
    """Main entry point."""
    if len(sys.argv) < 2:
        print("Usage: ozone-spde <command> [options]")
        print("\nCommands:")
        print("  cv       Station-level k-fold cross-validation")
        print("  predict  Posterior surface on a prediction grid")
        sys.exit(1)

    command = sys.argv[1]
    argv = sys.argv[2:]

    if command == 'cv':
        cross_validate(argv)
    elif command == 'predict':
        predict(argv)
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == '__main__':
    main()
