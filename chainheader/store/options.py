"""Configuration of the header store."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Callable, Mapping

__all__ = [
    "Option",
    "Parameters",
    "default_parameters",
    "with_index_cache_size",
    "with_params",
    "with_store_cache_size",
    "with_store_prefix",
    "with_write_batch_size",
]

_ERR_SUFFIX = "value should be positive and non-zero"

_SERIALIZED = ("store_cache_size", "index_cache_size", "write_batch_size")


@dataclass
class Parameters:
    """Parameters of a store.

    ``store_prefix`` is optional and never serialised; an empty prefix means
    the store's default one.
    """

    store_cache_size: int = 4096
    index_cache_size: int = 16384
    write_batch_size: int = 2048
    store_prefix: str = ""

    def validate(self) -> None:
        """Raise ValueError if any size is not positive."""
        if self.store_cache_size <= 0:
            raise ValueError(f"invalid store cache size:{_ERR_SUFFIX}")
        if self.index_cache_size <= 0:
            raise ValueError(f"invalid indexer cache size:{_ERR_SUFFIX}")
        if self.write_batch_size <= 0:
            raise ValueError(f"invalid batch size:{_ERR_SUFFIX}")

    def to_dict(self) -> dict[str, int]:
        """Return the serialisable fields."""
        return {name: getattr(self, name) for name in _SERIALIZED}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Parameters":
        """Build parameters from a mapping; unknown keys are ignored."""
        return cls(**{name: int(data[name]) for name in _SERIALIZED if name in data})


Option = Callable[[Parameters], None]


def default_parameters() -> Parameters:
    """Return the default store parameters."""
    return Parameters()


def with_store_cache_size(size: int) -> Option:
    def apply(params: Parameters) -> None:
        params.store_cache_size = size

    return apply


def with_index_cache_size(size: int) -> Option:
    def apply(params: Parameters) -> None:
        params.index_cache_size = size

    return apply


def with_write_batch_size(size: int) -> Option:
    def apply(params: Parameters) -> None:
        params.write_batch_size = size

    return apply


def with_store_prefix(prefix: str) -> Option:
    def apply(params: Parameters) -> None:
        params.store_prefix = prefix

    return apply


def with_params(params: Parameters) -> Option:
    """Override every parameter with those of ``params``."""

    def apply(old: Parameters) -> None:
        for field in fields(Parameters):
            setattr(old, field.name, getattr(params, field.name))

    return apply