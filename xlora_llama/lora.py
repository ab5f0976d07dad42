"""
Low-rank adapters and the adapted quantized linear projection.

An AdaptedQuantizedLinear is a quantized base matrix plus zero or more LoRA
deltas. Each delta is gated per token by a coefficient read out of the
AdapterScalings tensor, and all of them share one global scaling weight:

    y = W_q(x) + Σ_a  global_weight · s_a(token) · up_a(down_a(x)) · alpha_a / rank_a

Scalings come in two layouts:
  (batch, seq, n_adapters)                  one vector shared by every layer
  (batch, seq, n_registered, n_adapters)    one vector per adapted layer
In the second layout each linear first selects its own registration index,
then the adapter index.

The AdapterStore owns the adapter parameters and hands out those indices:
  - adapter index:      position of the adapter in the store's adapter list
  - registration index: order in which adapted linears were built (or the
                        explicit layer ordering table, when one is given)
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from xlora_llama.config import LoraConfig
from xlora_llama.errors import MissingWeight, ShapeMismatch
from xlora_llama.quant import QuantizedMatmul, QuantizedTensor


logger = logging.getLogger(__name__)


class LoraAdapter(nn.Module):
    """One low-rank delta: up(down(x)) * scale."""

    def __init__(
        self,
        name: str,
        index: int,
        down: torch.Tensor,
        up: torch.Tensor,
        scale: float,
    ):
        """
        Args:
            name: Adapter name (shared by every module the adapter targets).
            index: Global adapter index used to slice AdapterScalings.
            down: (rank, in_features) projection, "lora_A".
            up: (out_features, rank) projection, "lora_B".
            scale: alpha / rank.
        """
        super().__init__()
        if down.shape[0] != up.shape[1]:
            raise ShapeMismatch(
                f"adapter '{name}': down rank {down.shape[0]} != up rank {up.shape[1]}"
            )
        self.name = name
        self.index = index
        self.scale = scale
        self.register_buffer("down", down)
        self.register_buffer("up", up)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        h = F.linear(x, self.down.to(x.dtype))
        return F.linear(h, self.up.to(x.dtype)) * self.scale


class AdapterStore:
    """
    Adapter parameters keyed by adapter name and module name.

    Tensors are stored under "{adapter}.{module}.lora_A.weight" and
    "{adapter}.{module}.lora_B.weight", where module is the target name
    (e.g. "model.layers.0.self_attn.q_proj"). The store may also carry the
    classifier's state dict so a single file describes a full adapter set.
    """

    def __init__(
        self,
        adapters: Sequence[Tuple[str, LoraConfig]],
        tensors: Dict[str, torch.Tensor],
        layer_ordering: Optional[Dict[str, int]] = None,
        classifier_state: Optional[Dict[str, torch.Tensor]] = None,
    ):
        self.adapters = list(adapters)
        self.tensors = dict(tensors)
        self.layer_ordering = layer_ordering
        self.classifier_state = classifier_state
        # module name -> registration index, in registration order
        self.registered: Dict[str, int] = {}

    @property
    def adapter_names(self) -> List[str]:
        return [name for name, _ in self.adapters]

    @property
    def n_adapters(self) -> int:
        return len(self.adapters)

    @property
    def n_registered(self) -> int:
        """Size of the layer axis of layerwise scalings."""
        if not self.registered:
            return 0
        return max(self.registered.values()) + 1

    def _fetch(self, key: str) -> torch.Tensor:
        if key not in self.tensors:
            raise MissingWeight(key)
        return self.tensors[key]

    def adapters_for(self, module_name: str) -> List[LoraAdapter]:
        """Build the LoraAdapter modules that target `module_name`."""
        found = []
        for index, (name, cfg) in enumerate(self.adapters):
            if not cfg.targets(module_name):
                continue
            down = self._fetch(f"{name}.{module_name}.lora_A.weight")
            up = self._fetch(f"{name}.{module_name}.lora_B.weight")
            found.append(LoraAdapter(name, index, down, up, cfg.scale))
        return found

    def register(self, module_name: str) -> int:
        """Assign (or look up) the registration index of an adapted module."""
        if module_name in self.registered:
            return self.registered[module_name]
        if self.layer_ordering is not None:
            if module_name not in self.layer_ordering:
                raise MissingWeight(module_name)
            index = self.layer_ordering[module_name]
        else:
            index = len(self.registered)
        self.registered[module_name] = index
        return index

    def save(self, path: str) -> None:
        torch.save(
            {
                "adapters": [(name, cfg.to_dict()) for name, cfg in self.adapters],
                "tensors": self.tensors,
                "layer_ordering": self.layer_ordering,
                "classifier_state": self.classifier_state,
            },
            path,
        )

    @classmethod
    def load(cls, path: str, device: Optional[torch.device] = None) -> "AdapterStore":
        blob = torch.load(path, map_location=device or "cpu", weights_only=True)
        return cls(
            adapters=[(name, LoraConfig.from_dict(cfg)) for name, cfg in blob["adapters"]],
            tensors=blob["tensors"],
            layer_ordering=blob.get("layer_ordering"),
            classifier_state=blob.get("classifier_state"),
        )


class AdaptedQuantizedLinear(nn.Module):
    """
    Quantized base projection plus scaled low-rank adapter deltas.

    With no adapters (or no scalings) the output is exactly the quantized
    matmul: the adapter path is skipped, not multiplied by zero. Adapters
    whose coefficient is zero for every token in the batch are skipped too.
    """

    def __init__(
        self,
        base: QuantizedMatmul,
        adapters: Sequence[LoraAdapter] = (),
        layer_index: Optional[int] = None,
        module_name: str = "",
    ):
        super().__init__()
        self.base = base
        self.module_name = module_name
        self.layer_index = layer_index
        for adapter in adapters:
            if adapter.down.shape[1] != base.in_features:
                raise ShapeMismatch(
                    f"{module_name}: adapter '{adapter.name}' expects input width "
                    f"{adapter.down.shape[1]}, base has {base.in_features}"
                )
            if adapter.up.shape[0] != base.out_features:
                raise ShapeMismatch(
                    f"{module_name}: adapter '{adapter.name}' produces width "
                    f"{adapter.up.shape[0]}, base has {base.out_features}"
                )
        self.adapters = nn.ModuleDict(
            {adapter.name.replace(".", "_"): adapter for adapter in adapters}
        )

    @classmethod
    def from_store(
        cls,
        weight: QuantizedTensor,
        store: Optional[AdapterStore],
        module_name: str,
    ) -> "AdaptedQuantizedLinear":
        base = QuantizedMatmul(weight)
        if store is None:
            return cls(base, module_name=module_name)
        adapters = store.adapters_for(module_name)
        layer_index = store.register(module_name) if adapters else None
        if adapters:
            logger.debug(
                "%s: %d adapter(s), registration index %d",
                module_name, len(adapters), layer_index,
            )
        return cls(base, adapters, layer_index, module_name)

    @property
    def in_features(self) -> int:
        return self.base.in_features

    @property
    def out_features(self) -> int:
        return self.base.out_features

    def forward(
        self,
        x: torch.Tensor,
        scalings: Optional[torch.Tensor] = None,
        global_weight: float = 1.0,
    ) -> torch.Tensor:
        """
        Args:
            x: (..., in_features) input.
            scalings: AdapterScalings whose leading dims match x's leading
                dims, or None to disable every adapter.
            global_weight: Global scaling weight shared by all adapters.

        Returns:
            (..., out_features) projection.
        """
        out = self.base(x)
        if scalings is None or len(self.adapters) == 0:
            return out

        if scalings.dim() == x.dim() + 1:
            # Layerwise scalings: pick this module's row first.
            scalings = scalings.select(-2, self.layer_index)
        if scalings.shape[:-1] != x.shape[:-1]:
            raise ShapeMismatch(
                f"{self.module_name}: scalings shape {tuple(scalings.shape)} does not "
                f"match input shape {tuple(x.shape)}"
            )

        for adapter in self.adapters.values():
            if adapter.index >= scalings.shape[-1]:
                raise ShapeMismatch(
                    f"{self.module_name}: adapter index {adapter.index} outside "
                    f"scalings with {scalings.shape[-1]} adapters"
                )
            scaling = scalings[..., adapter.index]
            if not bool(torch.any(scaling != 0)):
                continue
            delta = adapter(x)
            gate = (scaling * global_weight).unsqueeze(-1).to(delta.dtype)
            out = out + delta * gate
        return out
