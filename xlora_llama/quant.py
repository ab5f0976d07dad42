"""
Quantized weight storage and the plain quantized matrix multiply.

Weights arrive from the weight provider as QuantizedTensor objects: a storage
format tag plus the raw blocks. They stay compressed in memory and are
dequantized on demand, right before the matmul that needs them.

SUPPORTED FORMATS (GGML block layouts, block size 32 along the last axis):
  ┌──────┬──────────────────────────────────────────────────────────────┐
  │ F32  │ plain float32                                                │
  │ F16  │ plain float16                                                │
  │ BF16 │ plain bfloat16                                               │
  │ Q8_0 │ int8 codes, one fp16 scale per block: w = d * q              │
  │ Q4_0 │ 4-bit codes packed two per byte, one fp16 scale per block:   │
  │      │ w = d * (q - 8); byte j holds q[j] (low) and q[j+16] (high)  │
  └──────┴──────────────────────────────────────────────────────────────┘
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from xlora_llama.errors import ShapeMismatch, UnsupportedConfiguration


# Elements per quantization block (QK8_0 == QK4_0 == 32 in GGML).
QK = 32


class QType(str, Enum):
    F32 = "F32"
    F16 = "F16"
    BF16 = "BF16"
    Q8_0 = "Q8_0"
    Q4_0 = "Q4_0"

    @property
    def is_block_quantized(self) -> bool:
        return self in (QType.Q8_0, QType.Q4_0)


_FLOAT_DTYPES = {
    QType.F32: torch.float32,
    QType.F16: torch.float16,
    QType.BF16: torch.bfloat16,
}


def _to_blocks(tensor: torch.Tensor) -> torch.Tensor:
    if tensor.shape[-1] % QK != 0:
        raise UnsupportedConfiguration(
            f"last dimension ({tensor.shape[-1]}) must be a multiple of {QK} "
            f"for block quantization"
        )
    return tensor.float().reshape(-1, QK)


def _quantize_q8_0(tensor: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    blocks = _to_blocks(tensor)
    amax = blocks.abs().amax(dim=-1, keepdim=True)
    d = amax / 127.0
    inv_d = torch.where(d > 0, 1.0 / d, torch.zeros_like(d))
    q = torch.round(blocks * inv_d).clamp(-127, 127).to(torch.int8)
    return q, d.to(torch.float16)


def _quantize_q4_0(tensor: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    blocks = _to_blocks(tensor)
    # GGML keeps the sign of the largest-magnitude value so that it maps
    # exactly onto code 0.
    idx = blocks.abs().argmax(dim=-1, keepdim=True)
    mx = blocks.gather(-1, idx)
    d = mx / -8.0
    inv_d = torch.where(d != 0, 1.0 / d, torch.zeros_like(d))
    q = torch.floor(blocks * inv_d + 8.5).clamp(0, 15).to(torch.uint8)
    half = QK // 2
    packed = q[:, :half] | (q[:, half:] << 4)
    return packed, d.to(torch.float16)


@dataclass
class QuantizedTensor:
    """
    A weight tensor in one of the storage formats above.

    For float formats `data` is the tensor itself and `scales` is None. For
    block formats `data` holds the codes as (n_blocks, bytes_per_block) and
    `scales` holds (n_blocks, 1) fp16 block scales.
    """

    qtype: QType
    shape: Tuple[int, ...]
    data: torch.Tensor
    scales: Optional[torch.Tensor] = None

    def __post_init__(self):
        self.qtype = QType(self.qtype)
        self.shape = tuple(int(s) for s in self.shape)
        if self.qtype.is_block_quantized and self.scales is None:
            raise ShapeMismatch(f"{self.qtype.value} tensor requires block scales")

    @classmethod
    def from_float(cls, tensor: torch.Tensor, qtype: str = "F32") -> "QuantizedTensor":
        """Store a float tensor in the requested format."""
        qtype = QType(qtype)
        shape = tuple(tensor.shape)
        if qtype in _FLOAT_DTYPES:
            return cls(qtype, shape, tensor.detach().to(_FLOAT_DTYPES[qtype]).contiguous())
        if qtype == QType.Q8_0:
            data, scales = _quantize_q8_0(tensor.detach())
        else:
            data, scales = _quantize_q4_0(tensor.detach())
        return cls(qtype, shape, data, scales)

    @property
    def numel(self) -> int:
        n = 1
        for s in self.shape:
            n *= s
        return n

    @property
    def nbytes(self) -> int:
        total = self.data.numel() * self.data.element_size()
        if self.scales is not None:
            total += self.scales.numel() * self.scales.element_size()
        return total

    def dequantize(
        self,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> torch.Tensor:
        """Expand to a dense tensor of `self.shape` in `dtype`."""
        data = self.data if device is None else self.data.to(device)
        if self.qtype in _FLOAT_DTYPES:
            return data.to(dtype).reshape(self.shape)

        scales = self.scales if device is None else self.scales.to(device)
        if self.qtype == QType.Q8_0:
            values = data.float()
        else:
            lo = (data & 0x0F).float()
            hi = (data >> 4).float()
            values = torch.cat([lo, hi], dim=-1) - 8.0
        return (values * scales.float()).reshape(self.shape).to(dtype)

    def to(self, device: torch.device) -> "QuantizedTensor":
        scales = None if self.scales is None else self.scales.to(device)
        return QuantizedTensor(self.qtype, self.shape, self.data.to(device), scales)


class QuantizedMatmul(nn.Module):
    """
    Plain (non-adapted) linear projection over a quantized weight.

    The weight has GGML/PyTorch layout (out_features, in_features), so the
    projection is F.linear(x, dequantize(W)). Codes and scales are kept as
    buffers so that model.to(device) moves them with everything else.
    """

    def __init__(self, weight: QuantizedTensor):
        super().__init__()
        if len(weight.shape) != 2:
            raise ShapeMismatch(
                f"quantized matmul needs a 2D weight, got shape {weight.shape}"
            )
        self.qtype = weight.qtype
        self.out_features, self.in_features = weight.shape
        self.register_buffer("qdata", weight.data)
        self.register_buffer("qscales", weight.scales)

    @property
    def weight(self) -> QuantizedTensor:
        return QuantizedTensor(
            self.qtype, (self.out_features, self.in_features), self.qdata, self.qscales
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if x.shape[-1] != self.in_features:
            raise ShapeMismatch(
                f"input width {x.shape[-1]} does not match weight input width "
                f"{self.in_features}"
            )
        w = self.weight.dequantize(dtype=x.dtype)
        return F.linear(x, w)

    def extra_repr(self) -> str:
        return (
            f"in_features={self.in_features}, out_features={self.out_features}, "
            f"qtype={self.qtype.value}"
        )
