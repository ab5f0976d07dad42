"""
Hardware abstraction for inference.

All device-specific decisions live here so the model and the generation
loop stay device-agnostic.

SUPPORTED DEVICES:
  1. CUDA (NVIDIA GPUs): bfloat16 on Ampere+, float16 otherwise.
  2. MPS (Apple Silicon): float32 activations; some ops fall back to CPU.
  3. CPU: float32.

Quantized weights are stored compressed on whichever device the model is
moved to and dequantized into the activation dtype right before each
matmul, so the dtype chosen here is the compute dtype, not the storage one.
"""

import torch


def get_device() -> torch.device:
    """
    Auto-detect the best available compute device.

    Priority order: CUDA → MPS → CPU
    """
    if torch.cuda.is_available():
        return torch.device("cuda")
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    else:
        return torch.device("cpu")


def get_dtype(requested: str, device: torch.device) -> torch.dtype:
    """
    Resolve a dtype string to the activation dtype for the given device.

    "auto" picks bfloat16 on CUDA devices that support it, float16 on older
    CUDA devices, and float32 on MPS and CPU. Half-precision dequantization
    on CPU works but is slower than float32, so "auto" never chooses it there.

    Args:
        requested: One of "auto", "float16", "bfloat16", "float32".
        device: The target device.

    Returns:
        torch.dtype: The resolved dtype.
    """
    if requested == "auto":
        if device.type == "cuda":
            if torch.cuda.is_bf16_supported():
                return torch.bfloat16
            else:
                return torch.float16
        return torch.float32

    dtype_map = {
        "float16": torch.float16,
        "bfloat16": torch.bfloat16,
        "float32": torch.float32,
    }
    if requested not in dtype_map:
        raise ValueError(
            f"Unknown dtype '{requested}'. "
            f"Choose from: {list(dtype_map.keys())} or 'auto'"
        )
    return dtype_map[requested]


def device_info(device: torch.device) -> str:
    """
    Human-readable description of the device, printed once at startup.
    """
    lines = [f"Device: {device}"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  VRAM: {props.total_memory / 1024**3:.1f} GB")
        lines.append(f"  Compute Capability: {props.major}.{props.minor}")
        lines.append(f"  BF16 Support: {torch.cuda.is_bf16_supported()}")
        lines.append(f"  CUDA Version: {torch.version.cuda}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
    else:
        lines.append("  Backend: CPU (no GPU acceleration)")

    lines.append(f"  PyTorch Version: {torch.__version__}")

    return "\n".join(lines)
