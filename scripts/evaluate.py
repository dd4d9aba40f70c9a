#!/usr/bin/env python3
"""
Evaluation script for the drift recovery ensemble.

This script runs repeated prequential trials over independently seeded
streams and reports drift detection, prequential and regret metrics
aggregated across trials.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from drift_recovery_ensemble.data.loader import DriftStreamGenerator, StreamLoader
from drift_recovery_ensemble.training.trainer import PrequentialTrainer
from drift_recovery_ensemble.utils.config import Config, load_config_with_env, setup_environment
from drift_recovery_ensemble.utils.performance_logger import get_performance_tracker

logger = logging.getLogger(__name__)

# Metric name -> (summary section, key); lower is better for the last two
AGGREGATED_METRICS = {
    "prequential_accuracy": ("prequential", "overall_accuracy"),
    "gmean": ("prequential", "gmean_mean"),
    "kappa": ("prequential", "kappa_mean"),
    "drift_detection_f1": ("drift", "drift_detection_f1"),
    "avg_detection_delay": ("drift", "avg_detection_delay"),
    "average_regret": ("regret", "average_regret"),
}


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Evaluate the drift recovery ensemble",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (defaults plus DRE_* environment overrides if omitted)",
    )

    parser.add_argument(
        "--checkpoint",
        type=str,
        help="Continue each trial from a saved engine checkpoint",
    )

    parser.add_argument(
        "--data-path",
        type=str,
        help="CSV stream to use instead of the synthetic generator",
    )

    parser.add_argument(
        "--output-dir",
        type=str,
        help="Output directory for results (overrides config)",
    )

    parser.add_argument(
        "--n-trials",
        type=int,
        default=5,
        help="Number of evaluation trials for statistical significance",
    )

    parser.add_argument(
        "--max-samples",
        type=int,
        help="Maximum samples to evaluate",
    )

    parser.add_argument(
        "--plot",
        action="store_true",
        help="Generate evaluation plots",
    )

    parser.add_argument(
        "--save-results",
        action="store_true",
        help="Save detailed results to files",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    return parser.parse_args()


def run_evaluation_trial(
    config: Config,
    trial_idx: int,
    checkpoint_path: Optional[str] = None,
    max_samples: Optional[int] = None,
) -> Dict:
    """
    Run one prequential trial.

    Synthetic streams and the engine are both seeded with
    ``random_seed + trial_idx``; CSV streams are replayed unchanged.

    Args:
        config: Configuration.
        trial_idx: Trial index.
        checkpoint_path: Optional checkpoint to start from.
        max_samples: Maximum samples to process.

    Returns:
        Dictionary with the trial's run summary.
    """
    seed = config.random_seed + trial_idx
    logger.info(f"Running evaluation trial {trial_idx + 1} (seed {seed})...")

    config.model.random_seed = seed
    config.mlflow.enabled = False
    config.evaluation.plot_results = False
    get_performance_tracker().reset()

    if config.data.source == "csv":
        stream = StreamLoader.from_csv(
            config.data.data_path, target=config.data.target_column, max_samples=config.data.max_samples
        )
        drift_points = None
    else:
        stream = DriftStreamGenerator(
            n_samples=config.data.n_samples,
            drift_points=config.data.drift_points,
            concept_sequence=config.data.concept_sequence,
            minority_ratio=config.data.minority_ratio,
            noise=config.data.noise,
            random_state=seed,
        )
        drift_points = stream.drift_points

    trainer = PrequentialTrainer(config)
    if checkpoint_path:
        trainer.load_checkpoint(checkpoint_path)

    result = trainer.run(stream, drift_points=drift_points, max_samples=max_samples)
    result["trial_idx"] = trial_idx
    result["drift_episodes"] = get_performance_tracker().counters.get("drift_episodes", 0)
    return result


def aggregate_results(trial_results: List[Dict]) -> Dict:
    """
    Aggregate results across multiple trials.

    Args:
        trial_results: List of trial result dictionaries.

    Returns:
        Dictionary with mean, standard deviation and values of each metric.
    """
    logger.info("Aggregating results across trials...")

    aggregated = {}
    for metric, (section, key) in AGGREGATED_METRICS.items():
        values = [
            float(result[section][key]) for result in trial_results
            if key in result[section] and np.isfinite(result[section][key])
        ]
        if not values:
            continue
        aggregated[metric] = {
            "mean": float(np.mean(values)),
            "std": float(np.std(values)),
            "values": values,
        }

    drifts = [result["model_state"]["n_drifts"] for result in trial_results]
    recoveries = [result["model_state"]["n_recoveries"] for result in trial_results]
    aggregated["n_drifts"] = {"mean": float(np.mean(drifts)), "std": float(np.std(drifts)), "values": drifts}
    aggregated["n_recoveries"] = {
        "mean": float(np.mean(recoveries)), "std": float(np.std(recoveries)), "values": recoveries,
    }

    logger.info("Aggregated Results:")
    for metric, stats in aggregated.items():
        logger.info(f"  {metric}: {stats['mean']:.3f} ± {stats['std']:.3f}")

    return {
        "aggregated_metrics": aggregated,
        "n_trials": len(trial_results),
    }


def create_evaluation_plots(
    aggregated_results: Dict,
    output_dir: Path,
) -> None:
    """
    Create evaluation plots.

    Args:
        aggregated_results: Aggregated results dictionary.
        output_dir: Output directory for plots.
    """
    logger.info("Creating evaluation plots...")

    plt.style.use('default')
    sns.set_palette("husl")

    plots_dir = output_dir / "plots"
    plots_dir.mkdir(exist_ok=True)

    metrics = [m for m in AGGREGATED_METRICS if m in aggregated_results["aggregated_metrics"]]
    if not metrics:
        logger.warning("No metrics to plot")
        return

    n_cols = 3
    n_rows = int(np.ceil(len(metrics) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(15, 5 * n_rows))
    axes = np.atleast_1d(axes).flatten()

    for ax, metric in zip(axes, metrics):
        values = aggregated_results["aggregated_metrics"][metric]["values"]
        ax.boxplot(values)
        ax.set_title(metric.replace("_", " ").title())
        ax.set_ylabel("Value")
        ax.grid(True, alpha=0.3)

    for ax in axes[len(metrics):]:
        ax.set_visible(False)

    plt.tight_layout()
    plt.savefig(plots_dir / "metrics_comparison.png", dpi=300, bbox_inches="tight")
    plt.close()

    logger.info(f"Plots saved to {plots_dir}")


def _json_safe(value):
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (np.floating, float)):
        return float(value) if np.isfinite(value) else None
    if isinstance(value, np.integer):
        return int(value)
    return value


def save_detailed_results(
    trial_results: List[Dict],
    aggregated_results: Dict,
    output_dir: Path,
) -> None:
    """
    Save detailed results to files.

    Args:
        trial_results: List of trial results.
        aggregated_results: Aggregated results.
        output_dir: Output directory.
    """
    logger.info("Saving detailed results...")

    with open(output_dir / "aggregated_results.json", "w") as f:
        json.dump(_json_safe(aggregated_results), f, indent=2)

    for result in trial_results:
        trial_file = output_dir / f"trial_{result['trial_idx'] + 1}_results.json"
        with open(trial_file, "w") as f:
            json.dump(_json_safe(result), f, indent=2)

    logger.info(f"Detailed results saved to {output_dir}")


def main():
    """Main evaluation function."""
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
    if args.debug:
        config.log_level = "DEBUG"
    plot = args.plot or config.evaluation.plot_results

    # Setup environment
    setup_environment(config)

    logger.info("Starting evaluation script")
    logger.info(f"Configuration loaded from: {args.config or 'defaults and environment'}")
    logger.info(f"Stream source: {config.data.source}")
    logger.info(f"Number of trials: {args.n_trials}")

    output_dir = Path(config.output_dir) / "evaluation_results"
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        trial_results = []
        for trial_idx in range(args.n_trials):
            result = run_evaluation_trial(
                config=config,
                trial_idx=trial_idx,
                checkpoint_path=args.checkpoint,
                max_samples=args.max_samples,
            )
            trial_results.append(result)

        aggregated_results = aggregate_results(trial_results)

        if plot:
            create_evaluation_plots(aggregated_results, output_dir)

        if args.save_results:
            save_detailed_results(trial_results, aggregated_results, output_dir)

        logger.info("Evaluation completed successfully!")

        print("\n" + "="*60)
        print("EVALUATION SUMMARY")
        print("="*60)
        print(f"Trials: {aggregated_results['n_trials']}")
        print()
        for metric, stats in aggregated_results["aggregated_metrics"].items():
            print(f"{metric}: {stats['mean']:.3f} ± {stats['std']:.3f}")
        print("="*60)

    except Exception as e:
        logger.error(f"Evaluation failed: {e}", exc_info=args.debug)
        sys.exit(1)


if __name__ == "__main__":
    main()
