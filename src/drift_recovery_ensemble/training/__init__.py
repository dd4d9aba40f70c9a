"""Prequential training pipeline."""

from .trainer import PrequentialTrainer

__all__ = ["PrequentialTrainer"]
