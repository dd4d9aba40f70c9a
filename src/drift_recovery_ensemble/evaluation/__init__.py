"""Evaluation metrics and analysis tools."""

from .metrics import DriftMetrics, PrequentialEvaluator, RegretAnalyzer

__all__ = ["DriftMetrics", "PrequentialEvaluator", "RegretAnalyzer"]
