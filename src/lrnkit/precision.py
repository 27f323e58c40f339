# Copyright (c) 2025, LRNKit Authors
"""Storage / accumulation dtype pairs.

Every LRN kernel reads its operands in a *storage* dtype, does all arithmetic
in an *accumulation* dtype that is at least as wide, and writes results back
in the storage dtype. ``Precision.widen`` and ``Precision.narrow`` are the only
conversions the kernels perform, and both check which side of the pair the
tensor comes from.

Example:
    >>> p = Precision.for_dtype(torch.bfloat16)
    >>> p.accum
    torch.float32
    >>> y = p.narrow(p.widen(x) * 2.0)
"""

from dataclasses import dataclass
from typing import Optional

import torch


class PrecisionError(TypeError):
    """Raised for an unsupported dtype pair or a conversion from the wrong side."""


SUPPORTED_PRECISIONS = frozenset(
    {
        (torch.float16, torch.float32),
        (torch.bfloat16, torch.float32),
        (torch.float32, torch.float32),
        (torch.float32, torch.float64),
        (torch.float64, torch.float64),
    }
)

DEFAULT_ACCUM_DTYPE = {
    torch.float16: torch.float32,
    torch.bfloat16: torch.float32,
    torch.float32: torch.float32,
    torch.float64: torch.float64,
}


@dataclass(frozen=True)
class Precision:
    """A supported (storage, accumulation) dtype pair."""

    storage: torch.dtype
    accum: torch.dtype

    def __post_init__(self):
        if (self.storage, self.accum) not in SUPPORTED_PRECISIONS:
            supported = sorted(f"{s}/{a}" for s, a in SUPPORTED_PRECISIONS)
            raise PrecisionError(
                f"Unsupported precision pair storage={self.storage}, accum={self.accum}. Supported: {supported}"
            )

    @classmethod
    def for_dtype(cls, storage: torch.dtype, accum: Optional[torch.dtype] = None) -> "Precision":
        """Pair ``storage`` with ``accum``, or with its default accumulation dtype."""
        if accum is None:
            if storage not in DEFAULT_ACCUM_DTYPE:
                raise PrecisionError(f"Unsupported storage dtype: {storage}")
            accum = DEFAULT_ACCUM_DTYPE[storage]
        return cls(storage, accum)

    def widen(self, x: torch.Tensor) -> torch.Tensor:
        if x.dtype != self.storage:
            raise PrecisionError(f"widen expects {self.storage} input, got {x.dtype}")
        return x.to(self.accum)

    def narrow(self, x: torch.Tensor) -> torch.Tensor:
        if x.dtype != self.accum:
            raise PrecisionError(f"narrow expects {self.accum} input, got {x.dtype}")
        return x.to(self.storage)


def widen(x: torch.Tensor, precision: Precision) -> torch.Tensor:
    return precision.widen(x)


def narrow(x: torch.Tensor, precision: Precision) -> torch.Tensor:
    return precision.narrow(x)


__all__ = [
    "Precision",
    "PrecisionError",
    "SUPPORTED_PRECISIONS",
    "DEFAULT_ACCUM_DTYPE",
    "widen",
    "narrow",
]
