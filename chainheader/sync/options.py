"""Configuration of the syncer."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import timedelta
from typing import Callable

__all__ = [
    "Option",
    "Parameters",
    "default_parameters",
    "with_block_time",
    "with_params",
    "with_recency_threshold",
    "with_trusting_period",
]


@dataclass
class Parameters:
    """Parameters of a syncer.

    ``trusting_period`` is how long a header's validator set can be trusted.
    ``block_time`` lets the syncer judge whether its subjective head is
    outdated; zero makes it always request the network head.
    ``recency_threshold`` is how long a header counts as recent; zero means
    one and a half block times.
    """

    trusting_period: timedelta = field(default_factory=lambda: timedelta(hours=336))
    block_time: timedelta = field(default_factory=timedelta)
    recency_threshold: timedelta = field(default_factory=timedelta)

    def validate(self) -> None:
        """Raise ValueError if the trusting period is zero."""
        if not self.trusting_period:
            raise ValueError(f"invalid trusting period duration: {self.trusting_period}")


Option = Callable[[Parameters], None]


def default_parameters() -> Parameters:
    """Return the default syncer parameters."""
    return Parameters()


def with_block_time(duration: timedelta) -> Option:
    def apply(params: Parameters) -> None:
        params.block_time = duration

    return apply


def with_recency_threshold(threshold: timedelta) -> Option:
    def apply(params: Parameters) -> None:
        params.recency_threshold = threshold

    return apply


def with_trusting_period(duration: timedelta) -> Option:
    def apply(params: Parameters) -> None:
        params.trusting_period = duration

    return apply


def with_params(params: Parameters) -> Option:
    """Override every parameter with those of ``params``."""

    def apply(old: Parameters) -> None:
        for item in fields(Parameters):
            setattr(old, item.name, getattr(params, item.name))

    return apply