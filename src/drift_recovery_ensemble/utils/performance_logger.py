"""Performance logging for stream runs.

Timings, counters and metrics are written to the dedicated ``performance``
logger so that they can be routed to their own handler.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Union

import numpy as np

perf_logger = logging.getLogger("performance")


class PerformanceTracker:
    """Collects metrics, timings and counters during a run."""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}
        self.timing_data: Dict[str, List[float]] = {}
        self.counters: Dict[str, int] = {}

    def log_metric(self, name: str, value: Union[float, int], tags: Optional[Dict[str, str]] = None) -> None:
        """Record the latest value of a metric.

        Args:
            name (str): Metric name.
            value (Union[float, int]): Metric value.
            tags (Optional[Dict[str, str]]): Additional tags for the metric.
        """
        self.metrics[name] = {"value": value, "timestamp": time.time(), **(tags or {})}
        perf_logger.info(f"METRIC: {name}={value}" + (f" tags={tags}" if tags else ""))

    def log_timing(self, name: str, duration: float, tags: Optional[Dict[str, str]] = None) -> None:
        self.timing_data.setdefault(name, []).append(duration)
        perf_logger.info(f"TIMING: {name} took {duration:.4f}s" + (f" tags={tags}" if tags else ""))

    def increment_counter(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value
        perf_logger.debug(f"COUNTER: {name}={self.counters[name]} (+{value})")

    def get_timing_stats(self, name: str) -> Optional[Dict[str, float]]:
        """Summary statistics of an operation's timings, or None if never timed."""
        durations = self.timing_data.get(name)
        if not durations:
            return None

        return {
            "count": len(durations),
            "total": float(sum(durations)),
            "mean": float(np.mean(durations)),
            "median": float(np.median(durations)),
            "min": float(min(durations)),
            "max": float(max(durations)),
            "std": float(np.std(durations)),
        }

    def get_summary(self) -> Dict[str, Any]:
        return {
            "metrics": self.metrics,
            "timing_summaries": {name: self.get_timing_stats(name) for name in self.timing_data},
            "counters": self.counters,
            "timestamp": time.time(),
        }

    def reset(self) -> None:
        self.metrics.clear()
        self.timing_data.clear()
        self.counters.clear()


_performance_tracker = PerformanceTracker()


def get_performance_tracker() -> PerformanceTracker:
    return _performance_tracker


@contextmanager
def timer(operation_name: str, tags: Optional[Dict[str, str]] = None):
    """Context manager timing a block on the global tracker.

    Example:
        >>> with timer("stream_run", tags={"source": "synthetic"}):
        ...     trainer.run(stream)
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        _performance_tracker.log_timing(operation_name, time.perf_counter() - start_time, tags)


def log_drift_episode(instance_index: int, fresh_episode: bool, repository_size: int, warning_size: int) -> None:
    """Record an out-of-control instance reported by the engine."""
    _performance_tracker.increment_counter("outcontrol_instances")
    if fresh_episode:
        _performance_tracker.increment_counter("drift_episodes")
        perf_logger.info(f"DRIFT: instance={instance_index}, repository={repository_size}, warning={warning_size}")
    else:
        perf_logger.debug(f"DRIFT_CONTINUED: instance={instance_index}")


def log_stream_throughput(n_instances: int, processing_time: float) -> None:
    """Record how many instances per second a run processed."""
    throughput = n_instances / processing_time if processing_time > 0 else 0.0
    _performance_tracker.log_metric("instances_processed", n_instances)
    _performance_tracker.log_metric("throughput", throughput)
    perf_logger.info(f"STREAM: instances={n_instances}, time={processing_time:.2f}s, "
                     f"throughput={throughput:.1f} instances/s")
