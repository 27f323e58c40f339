# Copyright (c) 2025, LRNKit Authors
"""Task indexing for the per-pixel LRN kernels.

The sliding-window kernels run one independent task per spatial location
``(n, h, w)`` of an NCHW tensor. A task walks the channel axis starting at
``offset(task_id)`` in steps of ``channel_stride`` elements.
"""

from dataclasses import dataclass
from typing import Callable, Tuple

import torch


@dataclass(frozen=True)
class TaskGrid:
    """Flat task grid over the spatial locations of an (N, C, H, W) tensor."""

    num: int
    channels: int
    height: int
    width: int

    @classmethod
    def for_tensor(cls, x: torch.Tensor) -> "TaskGrid":
        if x.dim() != 4:
            raise ValueError(f"LRN kernels expect a 4D (N, C, H, W) tensor, got shape {tuple(x.shape)}")
        return cls(*x.shape)

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        return (self.num, self.channels, self.height, self.width)

    @property
    def spatial(self) -> int:
        return self.height * self.width

    @property
    def channel_stride(self) -> int:
        return self.spatial

    @property
    def num_tasks(self) -> int:
        return self.num * self.spatial

    def coords(self, task_id: int) -> Tuple[int, int, int]:
        """Map a task id to its ``(n, h, w)`` location."""
        n, hw = divmod(task_id, self.spatial)
        h, w = divmod(hw, self.width)
        return n, h, w

    def offset(self, task_id: int) -> int:
        """Flat index of channel 0 of the task in a contiguous NCHW buffer."""
        n, h, w = self.coords(task_id)
        return (n * self.channels * self.height + h) * self.width + w

    def columns(self, x: torch.Tensor) -> torch.Tensor:
        """View ``x`` as (N, C, H*W); ``[:, c, :]`` holds channel ``c`` of every task."""
        return x.view(self.num, self.channels, self.spatial)


def launch(grid: TaskGrid, task_fn: Callable[[int], None]) -> None:
    """Run ``task_fn(task_id)`` for every task of ``grid``.

    Tasks share no state, so any execution order is valid. This launcher runs
    them serially on the host.
    """
    for task_id in range(grid.num_tasks):
        task_fn(task_id)


__all__ = ["TaskGrid", "launch"]
