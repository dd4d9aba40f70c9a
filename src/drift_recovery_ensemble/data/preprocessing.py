"""
Instance representation and attribute encoding for streaming classification.

This module provides the labelled instance type consumed by the ensemble engine
and the nominal/binary attribute encoder used to feed descriptor clusterers,
which only understand numeric features.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EncodingError(ValueError):
    """Raised when an encoded instance cannot be mapped back to the original header."""


@dataclass(frozen=True)
class Instance:
    """A single (possibly weighted) observation from the stream.

    Attributes:
        x (Dict[str, Any]): Feature mapping. Values are numeric or, for nominal
            attributes, strings.
        y (Optional[int]): Class index in ``[0, n_classes)``. ``None`` for
            unlabelled instances.
        weight (float): Training weight of the instance. Defaults to 1.0.
    """

    x: Dict[str, Any]
    y: Optional[int] = None
    weight: float = 1.0

    def with_weight(self, weight: float) -> "Instance":
        """Return a copy of this instance carrying a different weight."""
        return replace(self, weight=weight)


def _is_nominal(value: Any) -> bool:
    return isinstance(value, str)


class AttributeEncoder:
    """Nominal-to-binary encoder with an inverse transform.

    Nominal attributes are expanded into one indicator per observed value, keyed
    ``"<name>=<value>"``. Numeric attributes pass through unchanged. The header
    (attribute names and kinds) is fixed by the first instance seen; the set of
    values of each nominal attribute keeps growing as new values show up.

    Example:
        >>> encoder = AttributeEncoder()
        >>> encoder.encode({"colour": "red", "size": 2.0})
        {'colour=red': 1.0, 'size': 2.0}
        >>> encoder.decode({"colour=red": 0.9, "size": 2.0})
        {'colour': 'red', 'size': 2.0}
    """

    def __init__(self):
        self.header: Optional[List[str]] = None
        self.nominal_values: Dict[str, List[str]] = {}

    @property
    def is_initialized(self) -> bool:
        return self.header is not None

    def _record_header(self, x: Dict[str, Any]) -> None:
        self.header = list(x.keys())
        for name, value in x.items():
            if _is_nominal(value):
                self.nominal_values[name] = []
        logger.debug(f"Recorded header with {len(self.header)} attributes "
                     f"({len(self.nominal_values)} nominal)")

    def encode(self, x: Dict[str, Any]) -> Dict[str, float]:
        """Encode a feature mapping into a purely numeric one.

        Args:
            x (Dict[str, Any]): Original feature mapping.

        Returns:
            Dict[str, float]: Numeric mapping with one-hot groups for nominal attributes.
        """
        if self.header is None:
            self._record_header(x)

        encoded: Dict[str, float] = {}
        for name, value in x.items():
            if _is_nominal(value):
                known = self.nominal_values.setdefault(name, [])
                if value not in known:
                    known.append(value)
                for candidate in known:
                    encoded[f"{name}={candidate}"] = 1.0 if candidate == value else 0.0
            else:
                encoded[name] = float(value)
        return encoded

    def decode(self, encoded: Dict[str, float]) -> Dict[str, Any]:
        """Map an encoded (e.g. cluster center) mapping back to the original header.

        Nominal attributes take the value whose indicator is largest; ties go to
        the value seen first.

        Args:
            encoded (Dict[str, float]): Numeric mapping in encoded space.

        Returns:
            Dict[str, Any]: Mapping keyed by the original attribute names.

        Raises:
            EncodingError: If no header has been recorded yet, or an attribute of
                the header has no matching encoded key.
        """
        if self.header is None:
            raise EncodingError("Cannot decode before any instance has been encoded")

        decoded: Dict[str, Any] = {}
        for name in self.header:
            if name in self.nominal_values:
                values = self.nominal_values[name]
                scores = [(encoded[f"{name}={v}"], v) for v in values if f"{name}={v}" in encoded]
                if not scores:
                    raise EncodingError(f"No matched attribute for nominal attribute '{name}'")
                best_score = max(score for score, _ in scores)
                decoded[name] = next(v for score, v in scores if score == best_score)
            elif name in encoded:
                decoded[name] = encoded[name]
            else:
                raise EncodingError(f"No matched attribute for numeric attribute '{name}'")
        return decoded
