# Copyright (c) 2025, LRNKit Authors
from .lrn import LRN, lrn, lrn_func

__all__ = [
    "LRN",
    "lrn",
    "lrn_func",
]
