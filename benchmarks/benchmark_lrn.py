#!/usr/bin/env python
# Copyright (c) 2025, LRNKit Authors
"""Benchmark cross-channel LRN: PyTorch vs LRNKit backends.

Implementations:
- PyTorch: torch.nn.functional.local_response_norm (avg_pool3d over squares)
- torch: LRNKit sliding window in PyTorch ops
- Triton: LRNKit Triton kernels
- cuteDSL: LRNKit CuTe DSL kernels (SM80+, requires the cute extra)

Usage:
    python benchmarks/benchmark_lrn.py
"""

import torch
import torch.nn.functional as F

from lrnkit import LRN
from lrnkit.kernels.lrn.ref import lrn_backward_pytorch
from lrnkit.utils.testing import benchmark_op, lrn_bytes

try:
    import cutlass  # noqa: F401

    CUTLASS_AVAILABLE = torch.cuda.get_device_capability()[0] >= 8
except ImportError:
    CUTLASS_AVAILABLE = False

SIZE, ALPHA, BETA, K = 5, 1e-4, 0.75, 2.0


def make_configs(dtype):
    device = "cuda"
    shapes = {
        "AlexNet conv1 B=128": (128, 96, 55, 55),
        "AlexNet conv2 B=128": (128, 256, 27, 27),
        "GoogLeNet stem B=64": (64, 64, 56, 56),
        "GoogLeNet conv2 B=64": (64, 192, 56, 56),
    }
    return {name: (torch.randn(shape, device=device, dtype=dtype),) for name, shape in shapes.items()}


def forward_providers():
    providers = {"PyTorch": lambda x: F.local_response_norm(x, SIZE, ALPHA, BETA, K)}
    backends = ["torch", "triton"] + (["cute"] if CUTLASS_AVAILABLE else [])
    for backend in backends:
        providers[backend] = LRN(size=SIZE, alpha=ALPHA, beta=BETA, k=K, backend=backend).forward
    return providers


def backward_providers():
    backends = ["torch", "triton"] + (["cute"] if CUTLASS_AVAILABLE else [])

    def make_backward(backend):
        layer = LRN(size=SIZE, alpha=ALPHA, beta=BETA, k=K, backend=backend)
        state = {}

        def backward(x):
            # One forward per input; the scale buffer must match it
            if state.get("x") is not x:
                state.update(x=x, top=layer.forward(x), dy=torch.randn_like(x))
            return layer.backward(state["dy"], x, state["top"])

        return backward

    def pytorch(x):
        return lrn_backward_pytorch(torch.ones_like(x), x, SIZE, ALPHA, BETA, K)

    providers = {"PyTorch": pytorch}
    for backend in backends:
        providers[backend] = make_backward(backend)
    return providers


def main():
    for dtype in (torch.float32, torch.bfloat16):
        configs = make_configs(dtype)
        benchmark_op(
            f"LRN Forward ({dtype})",
            configs,
            forward_providers(),
            lambda args: lrn_bytes(args[0]),
        )
        benchmark_op(
            f"LRN Backward ({dtype})",
            configs,
            backward_providers(),
            lambda args: lrn_bytes(args[0]),
        )


if __name__ == "__main__":
    main()
