# Copyright (c) 2025, LRNKit Authors
"""Layer configuration for Local Response Normalization."""

import enum
import math
import operator
from dataclasses import dataclass
from typing import Union


class LRNConfigError(ValueError):
    """Raised when an LRN layer is constructed with an invalid configuration."""


class NormRegion(enum.IntEnum):
    """Region over which the local response is summed."""

    ACROSS_CHANNELS = 0
    WITHIN_CHANNEL = 1

    @classmethod
    def parse(cls, value: Union["NormRegion", str, int]) -> "NormRegion":
        """Accept a member, its name (case-insensitive) or its integer value."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise LRNConfigError(
                    f"Unknown norm_region: {value!r}. Supported: {[m.name for m in cls]}"
                ) from None
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise LRNConfigError(
                    f"Unknown norm_region: {value!r}. Supported: {[int(m) for m in cls]}"
                ) from None
        raise LRNConfigError(f"norm_region must be a NormRegion, str or int, got {type(value).__name__}")


@dataclass(frozen=True)
class LRNConfig:
    """Hyperparameters of an LRN layer, fixed for the lifetime of the layer.

    Attributes:
        size: Number of channels in the normalization window (default: 5)
        alpha: Scaling of the windowed sum of squares (default: 1.0)
        beta: Exponent applied to the scale (default: 0.75)
        k: Additive bias of the scale (default: 1.0)
        norm_region: ACROSS_CHANNELS or WITHIN_CHANNEL (default: ACROSS_CHANNELS)

    The forward window of channel ``c`` is ``[c - pre_pad, c + post_pad]``.
    The backward window is the transpose of the forward one, which for even
    ``size`` shifts it by one channel.
    """

    size: int = 5
    alpha: float = 1.0
    beta: float = 0.75
    k: float = 1.0
    norm_region: NormRegion = NormRegion.ACROSS_CHANNELS

    def __post_init__(self):
        if isinstance(self.size, bool):
            raise LRNConfigError(f"size must be an integer, got {self.size!r}")
        try:
            size = operator.index(self.size)
        except TypeError:
            raise LRNConfigError(f"size must be an integer, got {self.size!r}") from None
        if size < 1:
            raise LRNConfigError(f"size must be >= 1, got {size}")
        object.__setattr__(self, "size", size)

        for name in ("alpha", "beta", "k"):
            value = getattr(self, name)
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise LRNConfigError(f"{name} must be a real number, got {value!r}") from None
            if not math.isfinite(value):
                raise LRNConfigError(f"{name} must be finite, got {value}")
            object.__setattr__(self, name, value)

        object.__setattr__(self, "norm_region", NormRegion.parse(self.norm_region))

    @property
    def pre_pad(self) -> int:
        """Channels before ``c`` in the forward window."""
        return (self.size - 1) // 2

    @property
    def post_pad(self) -> int:
        """Channels after ``c`` in the forward window."""
        return self.size - self.pre_pad - 1

    @property
    def backward_pre_pad(self) -> int:
        return self.size - (self.size + 1) // 2

    @property
    def backward_post_pad(self) -> int:
        return self.size - self.backward_pre_pad - 1

    @property
    def alpha_over_size(self) -> float:
        return self.alpha / self.size

    @property
    def cache_ratio(self) -> float:
        """Coefficient of the cross-channel term of the gradient."""
        return 2.0 * self.alpha * self.beta / self.size
