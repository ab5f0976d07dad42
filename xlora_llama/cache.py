"""
Key/value cache arenas and the causal mask memo table.

TWO ARENAS:
  Every generation step may run the layer stack twice (see model.XLoraLlama):
    PRIMARY  the real, growing cache used by the final pass
    SCALING  a scratch cache used while the classifier observes the model
  Each arena holds one optional (key, value) pair per layer. Keys and values
  have shape (batch, n_kv_heads, cached_len, head_dim) and only ever grow by
  concatenation along dim 2. The arenas are separate lists, so writing one
  never changes what the other reports.

MASK MEMO:
  Causal masks are boolean (seq, seq) tensors, True where j > i (masked).
  One is built per distinct sequence length and kept for the lifetime of the
  owning model.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

import torch


KVPair = Tuple[torch.Tensor, torch.Tensor]


class CacheArena(str, Enum):
    PRIMARY = "primary"
    SCALING = "scaling"


class KVCache:
    """Per-layer (key, value) slots for both arenas."""

    def __init__(self, n_layers: int):
        self.n_layers = n_layers
        self._arenas: Dict[CacheArena, List[Optional[KVPair]]] = {
            arena: [None] * n_layers for arena in CacheArena
        }

    def arena(self, which: CacheArena) -> List[Optional[KVPair]]:
        """The mutable slot list of one arena, indexed by layer."""
        return self._arenas[CacheArena(which)]

    def reset(self, which: Optional[CacheArena] = None) -> None:
        """Clear one arena back to empty placeholders, or both when which is None."""
        arenas = list(CacheArena) if which is None else [CacheArena(which)]
        for arena in arenas:
            self._arenas[arena] = [None] * self.n_layers

    def seq_len(self, which: CacheArena, layer: int = 0) -> int:
        """Number of cached positions in one layer slot (0 for a placeholder)."""
        entry = self.arena(which)[layer]
        if entry is None:
            return 0
        return entry[0].shape[2]

    def __repr__(self) -> str:
        lens = ", ".join(f"{a.value}={self.seq_len(a)}" for a in CacheArena)
        return f"KVCache(n_layers={self.n_layers}, {lens})"


class CausalMaskCache:
    """Memoized strict-upper-triangular masks keyed by sequence length."""

    def __init__(self):
        self._masks: Dict[int, torch.Tensor] = {}

    def mask_for(self, seq_len: int, device: Optional[torch.device] = None) -> torch.Tensor:
        mask = self._masks.get(seq_len)
        if mask is None:
            mask = torch.triu(
                torch.ones(seq_len, seq_len, dtype=torch.bool, device=device), diagonal=1
            )
            self._masks[seq_len] = mask
        elif device is not None and mask.device != torch.device(device):
            mask = mask.to(device)
            self._masks[seq_len] = mask
        return mask

    def __len__(self) -> int:
        return len(self._masks)

    def __contains__(self, seq_len: int) -> bool:
        return seq_len in self._masks
