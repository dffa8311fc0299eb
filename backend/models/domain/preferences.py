"""
Content preference map - typed tag -> weight mapping
"""
import math
from collections.abc import Mapping
from typing import Dict, Iterator, Optional


class PreferenceMap(Mapping):
    """
    Immutable tag -> weight mapping with validated ranges

    Weights must be finite numbers in [0, 1]. Keys are stripped, non-empty
    strings. Behaves like a read-only dict.
    """

    __slots__ = ('_weights',)

    def __init__(self, weights: Optional[Mapping] = None):
        cleaned: Dict[str, float] = {}
        for raw_tag, raw_weight in (weights or {}).items():
            if not isinstance(raw_tag, str) or not raw_tag.strip():
                raise ValueError(f"Preference tag must be a non-empty string, got {raw_tag!r}")
            if isinstance(raw_weight, bool) or not isinstance(raw_weight, (int, float)):
                raise ValueError(f"Preference weight for '{raw_tag}' must be a number, got {raw_weight!r}")
            weight = float(raw_weight)
            if not math.isfinite(weight) or weight < 0.0 or weight > 1.0:
                raise ValueError(f"Preference weight for '{raw_tag}' must be in [0, 1], got {raw_weight}")
            cleaned[raw_tag.strip()] = weight
        self._weights = cleaned

    @classmethod
    def coerce(cls, value) -> 'PreferenceMap':
        """Return value as a PreferenceMap (None -> empty)"""
        if isinstance(value, PreferenceMap):
            return value
        return cls(value)

    def __getitem__(self, tag: str) -> float:
        return self._weights[tag]

    def __iter__(self) -> Iterator[str]:
        return iter(self._weights)

    def __len__(self) -> int:
        return len(self._weights)

    def __repr__(self) -> str:
        return f"PreferenceMap({self._weights!r})"

    def __eq__(self, other) -> bool:
        if isinstance(other, PreferenceMap):
            return self._weights == other._weights
        if isinstance(other, Mapping):
            return self._weights == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._weights.items()))

    @property
    def total_weight(self) -> float:
        return sum(self._weights.values())

    def to_dict(self) -> Dict[str, float]:
        return dict(self._weights)

    # Immutable: copies can share the instance
    def __copy__(self) -> 'PreferenceMap':
        return self

    def __deepcopy__(self, memo) -> 'PreferenceMap':
        return self
