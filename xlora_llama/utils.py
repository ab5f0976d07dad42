"""
Utility functions for the inference pipeline.

Cross-cutting concerns that don't belong in any specific component:
reproducibility (seeding), diagnostics (model summaries), timing, and
logging setup for the command-line scripts.
"""

import logging
import os
import random
import time
from datetime import datetime
from typing import Optional

import numpy as np
import torch
import torch.nn as nn


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed Python, NumPy and PyTorch (CPU and CUDA) random generators.

    Sampling in generate() draws from torch's global generator, so seeding
    makes non-greedy generations repeatable.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_bytes(model: nn.Module) -> int:
    """Bytes held by the model's parameters and buffers (quantized codes included)."""
    tensors = list(model.parameters()) + list(model.buffers())
    return sum(t.numel() * t.element_size() for t in tensors)


def print_model_summary(model: nn.Module) -> str:
    """
    Print a breakdown of stored tensors by top-level component.

    Quantized weights live in buffers, so the summary counts bytes rather
    than trainable parameters. Adapter deltas are reported separately.

    Returns:
        The summary as a string (also printed to stdout).
    """
    lines = []
    lines.append("=" * 65)
    lines.append("Model Storage Summary")
    lines.append("=" * 65)
    lines.append(f"{'Component':<40} {'Bytes':>14}")
    lines.append("-" * 65)

    totals = {}
    adapter_bytes = 0
    named = list(model.named_parameters()) + list(model.named_buffers())
    for name, t in named:
        nbytes = t.numel() * t.element_size()
        if ".adapters." in name:
            adapter_bytes += nbytes
            continue
        parts = name.split(".")
        key = ".".join(parts[:2]) if parts[0] == "layers" else parts[0]
        totals[key] = totals.get(key, 0) + nbytes

    for key, nbytes in totals.items():
        lines.append(f"  {key:<38} {nbytes:>14,d}")

    lines.append("-" * 65)
    lines.append(f"  {'Adapters (low-rank deltas)':<38} {adapter_bytes:>14,d}")
    total = sum(totals.values()) + adapter_bytes
    lines.append(f"  {'TOTAL':<38} {total:>14,d}")
    lines.append(f"  {'Memory':<38} {total / 1024**2:>11.1f} MB")
    lines.append("=" * 65)

    summary = "\n".join(lines)
    print(summary)
    return summary


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer("Forward pass") as t:
            logits = model(ids)
        print(t)  # "Forward pass: 0.0234s"

    On CUDA the device is synchronized on entry and exit, since kernels run
    asynchronously.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def __enter__(self):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.elapsed = time.perf_counter() - self.start

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════════════

def setup_logging(verbose: bool = False, log_dir: Optional[str] = None) -> Optional[str]:
    """
    Configure the root logger for command-line use.

    Console output goes to stderr at INFO (DEBUG with verbose). With log_dir,
    a timestamped file additionally receives everything at DEBUG.

    Returns:
        Path of the log file, or None.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not root.handlers:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    log_path = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = os.path.join(log_dir, f"generate_{timestamp}.log")
        file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        root.setLevel(logging.DEBUG)
    return log_path
