#!/usr/bin/env python3
"""
Training script for the drift recovery ensemble.

This script runs a prequential (test-then-train) pass over a synthetic or CSV
stream with logging, checkpointing, and experiment tracking via MLflow.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from drift_recovery_ensemble.data.loader import DriftStreamGenerator, StreamLoader
from drift_recovery_ensemble.data.preprocessing import Instance
from drift_recovery_ensemble.training.trainer import PrequentialTrainer
from drift_recovery_ensemble.utils.config import Config, load_config_with_env, setup_environment
from drift_recovery_ensemble.utils.performance_logger import get_performance_tracker

logger = logging.getLogger(__name__)


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Train the drift recovery ensemble on a data stream",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (defaults plus DRE_* environment overrides if omitted)",
    )

    parser.add_argument(
        "--data-path",
        type=str,
        help="CSV stream to use instead of the synthetic generator",
    )

    parser.add_argument(
        "--max-samples",
        type=int,
        help="Maximum instances to process",
    )

    parser.add_argument(
        "--output-dir",
        type=str,
        help="Output directory (overrides config)",
    )

    parser.add_argument(
        "--experiment-name",
        type=str,
        help="MLflow experiment name (overrides config)",
    )

    parser.add_argument(
        "--run-name",
        type=str,
        help="MLflow run name",
    )

    parser.add_argument(
        "--no-mlflow",
        action="store_true",
        help="Disable MLflow tracking",
    )

    parser.add_argument(
        "--seed",
        type=int,
        help="Random seed (overrides config)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    return parser.parse_args()


def build_stream(config: Config) -> Tuple[Iterable[Instance], Optional[List[int]]]:
    """
    Build the input stream described by the configuration.

    Args:
        config: Configuration object.

    Returns:
        Tuple of (stream, known drift points). Drift points are only known
        for the synthetic stream.
    """
    if config.data.source == "csv":
        logger.info(f"Loading stream from {config.data.data_path}...")
        loader = StreamLoader.from_csv(
            config.data.data_path,
            target=config.data.target_column,
            max_samples=config.data.max_samples,
        )
        logger.info(f"Class distribution: {loader.class_distribution}")
        return loader, None

    logger.info(
        f"Generating synthetic stream: {config.data.n_samples} samples, "
        f"drifts at {config.data.drift_points}, minority ratio {config.data.minority_ratio}"
    )
    generator = DriftStreamGenerator(
        n_samples=config.data.n_samples,
        drift_points=config.data.drift_points,
        concept_sequence=config.data.concept_sequence,
        minority_ratio=config.data.minority_ratio,
        noise=config.data.noise,
        random_state=config.random_seed,
    )
    return generator, generator.drift_points


def log_results(result: dict) -> None:
    logger.info("Training Results:")
    for key, value in result.items():
        if isinstance(value, dict):
            logger.info(f"  {key}:")
            for sub_key, sub_value in value.items():
                logger.info(f"    {sub_key}: {sub_value}")
        else:
            logger.info(f"  {key}: {value}")


def main():
    """Main training function."""
    args = parse_arguments()

    # Load configuration
    try:
        config = load_config_with_env(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading configuration: {e}")
        sys.exit(1)

    # Override config with command line arguments
    if args.data_path:
        config.data.source = "csv"
        config.data.data_path = args.data_path
    if args.output_dir:
        config.output_dir = args.output_dir
    if args.experiment_name:
        config.mlflow.experiment_name = args.experiment_name
    if args.run_name:
        config.mlflow.run_name = args.run_name
    if args.no_mlflow:
        config.mlflow.enabled = False
    if args.seed is not None:
        config.random_seed = args.seed
        config.model.random_seed = args.seed
    if args.debug:
        config.log_level = "DEBUG"

    # Setup environment
    setup_environment(config)

    logger.info("Starting training script")
    logger.info(f"Configuration loaded from: {args.config or 'defaults and environment'}")
    logger.info(f"Stream source: {config.data.source}")

    try:
        stream, drift_points = build_stream(config)
        trainer = PrequentialTrainer(config)

        max_samples = args.max_samples or config.data.max_samples
        result = trainer.run(stream, drift_points=drift_points, max_samples=max_samples)
        log_results(result)

        performance = get_performance_tracker().get_summary()
        logger.info(f"Run timing: {performance['timing_summaries'].get('prequential_run')}")
        logger.info(f"Counters: {performance['counters']}")

        logger.info(f"Achieved prequential accuracy: {result['prequential'].get('overall_accuracy', 0.0):.3f}")
        logger.info("Training completed successfully!")

    except Exception as e:
        logger.error(f"Training failed: {e}", exc_info=args.debug)
        sys.exit(1)


if __name__ == "__main__":
    main()
