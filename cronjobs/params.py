"""
Conversion between flat parameter mappings and per-firing parameter bags.

A job definition stores its parameters as a plain ``str -> str`` mapping.
Each firing receives its own ParameterBag copy so concurrent or successive
firings never share mutable state.
"""

from collections.abc import MutableMapping
from typing import Dict, Iterator, Mapping, Optional

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off')


def _check_item(key, value):
    if not isinstance(key, str):
        raise TypeError(f"Parameter keys must be strings, got {type(key).__name__}")
    if not isinstance(value, str):
        raise TypeError(
            f"Parameter '{key}' must be a string, got {type(value).__name__}"
        )


class ParameterBag(MutableMapping):
    """
    String-keyed, string-valued data handed to a job at execution time.

    Behaves like a dict restricted to string keys and values, with a few
    typed readers for parameters that carry numbers or flags.
    """

    def __init__(self, data: Optional[Mapping[str, str]] = None):
        self._data: Dict[str, str] = {}
        if data:
            for key, value in data.items():
                self[key] = value

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str):
        _check_item(key, value)
        self._data[key] = value

    def __delitem__(self, key: str):
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self):
        return f"ParameterBag({self._data!r})"

    def get_int(self, key: str, default: Optional[int] = None) -> Optional[int]:
        """
        Read a parameter as an integer.

        Args:
            key: Parameter name
            default: Returned when the parameter is absent

        Raises:
            ValueError: If the parameter is present but not an integer
        """
        value = self._data.get(key)
        if value is None:
            return default
        return int(value.strip())

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Read a parameter as a boolean ('true'/'false', 'yes'/'no', '1'/'0')."""
        value = self._data.get(key)
        if value is None:
            return default
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        raise ValueError(f"Parameter '{key}' is not a boolean: {value!r}")


def to_bag(mapping: Optional[Mapping[str, str]]) -> ParameterBag:
    """
    Build a ParameterBag from a mapping.

    Args:
        mapping: Parameter mapping, or None for an empty bag

    Returns:
        A new bag holding a copy of every key/value pair

    Raises:
        TypeError: If a key or value is not a string
    """
    return ParameterBag(mapping)


def to_mapping(bag: Mapping[str, str]) -> Dict[str, str]:
    """Return a plain dict holding exactly the bag's keys and values."""
    return dict(bag.items())
