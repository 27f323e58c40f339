# Copyright (c) 2025, LRNKit Authors
from typing import Callable, Dict, Optional, Tuple

import torch
import triton


def lrn_bytes(x: torch.Tensor) -> int:
    """Bytes moved by one forward or one backward LRN pass over ``x``.

    Forward reads bottom and writes scale, then reads bottom and scale and
    writes top. Backward reads bottom, top, scale and top_diff and writes
    bottom_diff. Either way five tensors of the size of ``x``.
    """
    return 5 * x.numel() * x.element_size()


def benchmark_op(
    name: str,
    configs: Dict[str, Optional[Tuple]],
    op_map: Dict[str, Callable],
    bytes_provider: Callable[[Tuple], int],
):
    """
    Benchmark LRN implementations over a set of input configurations.

    Args:
        name: Name of the operation being benchmarked.
        configs: Mapping of configuration names to argument tuples (None marks a skipped config).
        op_map: Mapping of provider names to callables taking the argument tuple.
        bytes_provider: Function of the argument tuple returning bytes moved per call.
    """
    print(f"\n{'=' * 20} {name} {'=' * 20}")
    print(f"{'Config':<24} | {'Provider':<10} | {'Speed (GB/s)':<13} | {'Time (ms)':<10} | {'Peak Mem (MB)':<12}")
    print("-" * 83)

    failed_providers = set()
    for config_name, args in configs.items():
        if args is None:
            for provider in op_map:
                print(f"{config_name:<24} | {provider:<10} | {'skip':<13} | {'-':<10} | {'-':<12}")
            continue

        for provider, func in op_map.items():
            if provider in failed_providers:
                print(f"{config_name:<24} | {provider:<10} | {'OOM':<13} | {'-':<10} | {'-':<12}")
                continue

            try:
                # Warm up (also triggers JIT compilation)
                for _ in range(3):
                    func(*args)

                ms = triton.testing.do_bench(lambda: func(*args))
                gbps = bytes_provider(args) / (ms * 1e-3) / 1e9 if ms > 0 else 0.0

                torch.cuda.reset_peak_memory_stats()
                base_mem = torch.cuda.memory_allocated()
                _ = func(*args)
                peak_delta_mb = (torch.cuda.max_memory_allocated() - base_mem) / (1024 * 1024)

                print(f"{config_name:<24} | {provider:<10} | {gbps:<13.2f} | {ms:<10.4f} | {peak_delta_mb:<12.2f}")
            except torch.cuda.OutOfMemoryError:
                print(f"{config_name:<24} | {provider:<10} | {'OOM':<13} | {'-':<10} | {'-':<12}")
                failed_providers.add(provider)
                torch.cuda.empty_cache()


def reference_atol(ref_func: Callable, x: torch.Tensor, *args, rel_floor: float = 1e-5) -> float:
    """Tolerance for comparing a kernel against ``ref_func`` at the dtype of ``x``.

    Five units of roundoff of the dtype of ``x`` (at least ``rel_floor``),
    relative to the largest float32 reference output.
    """
    out_fp32 = ref_func(x.float(), *args)
    magnitude = max(out_fp32.abs().max().item(), 1.0)
    return max(5.0 * torch.finfo(x.dtype).eps, rel_floor) * magnitude


def verify_kernel(
    name: str,
    func: Callable,
    ref_func: Callable,
    x: torch.Tensor,
    *args,
    atol: Optional[float] = None,
    check_grad: bool = True,
):
    """
    Check forward and backward output of ``func(x, *args)`` against ``ref_func(x, *args)``.

    Args:
        name: Name of the kernel.
        func: The kernel function to test (must be differentiable when check_grad is set).
        ref_func: The reference implementation.
        x: Input tensor.
        args: Non-tensor arguments shared by both functions.
        atol: Absolute tolerance (derived from the reference when None).
        check_grad: Whether to compare gradients with respect to ``x``.
    """
    if atol is None:
        atol = reference_atol(ref_func, x.detach(), *args)

    x_ref = x.detach().clone().requires_grad_(check_grad)
    x_mac = x.detach().clone().requires_grad_(check_grad)

    out_ref = ref_func(x_ref, *args)
    out_mac = func(x_mac, *args)

    diff_fwd = (out_mac.float() - out_ref.float()).abs().max().item()
    assert diff_fwd <= atol, f"{name} forward mismatch for {x.dtype}: {diff_fwd} > {atol}"

    if not check_grad:
        return

    dy = torch.randn_like(out_ref)
    out_ref.backward(dy)
    out_mac.backward(dy)

    diff_grad = (x_mac.grad.float() - x_ref.grad.float()).abs().max().item()
    grad_atol = max(10.0 * atol, 1e-5)
    assert diff_grad <= grad_atol, f"{name} grad mismatch for {x.dtype}: {diff_grad} > {grad_atol}"
