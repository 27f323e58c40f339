# Copyright (c) 2025, LRNKit Authors
"""Module patching utilities.

Structure:
- lrn.py: torch.nn.LocalResponseNorm replacement and forward patching
"""

from lrnkit.patching.lrn import (
    LRNKitLocalResponseNorm,
    make_lrn_forward,
    patch_lrn,
    supports_module,
    unpatch_lrn,
)

__all__ = [
    "LRNKitLocalResponseNorm",
    "make_lrn_forward",
    "patch_lrn",
    "supports_module",
    "unpatch_lrn",
]
