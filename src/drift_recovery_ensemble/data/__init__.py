"""Stream loading and instance encoding utilities."""

from .loader import DriftStreamGenerator, StreamLoader
from .preprocessing import AttributeEncoder, EncodingError, Instance

__all__ = ["AttributeEncoder", "DriftStreamGenerator", "EncodingError", "Instance", "StreamLoader"]
