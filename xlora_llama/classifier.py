"""
The adapter-scaling classifier.

The model only relies on the AdapterScalingClassifier protocol:
    classifier(hidden_states)                        -> AdapterScalings
    classifier.dummy_scalings(batch, seq, device, dt) -> placeholder scalings
    classifier.global_scaling_weight()               -> float

ScalingClassifier is the standard implementation: a small MLP over the
final hidden states of the scaling pass, followed by an optional
temperature softmax and an optional per-token top-k.
"""

from typing import Optional, Protocol

import torch
import torch.nn as nn
import torch.nn.functional as F

from xlora_llama.config import ClassifierConfig


class AdapterScalingClassifier(Protocol):
    def __call__(self, hidden_states: torch.Tensor) -> torch.Tensor:
        ...

    def dummy_scalings(
        self,
        batch_size: int,
        seq_len: int,
        device: Optional[torch.device],
        dtype: torch.dtype,
    ) -> torch.Tensor:
        ...

    def global_scaling_weight(self) -> float:
        ...


class ScalingClassifier(nn.Module):
    """
    MLP head mapping hidden states to per-token adapter scalings.

    Output shape is (batch, seq, n_adapters), or (batch, seq, n_layers,
    n_adapters) when layerwise_scalings is set. n_layers is the number of
    adapted projections registered while the model was loaded.
    """

    def __init__(self, config: ClassifierConfig, n_layers: int = 1):
        super().__init__()
        config.validate()
        self.config = config
        self.n_layers = n_layers
        self.n_adapters = config.n_adapters

        out_features = config.n_adapters
        if config.layerwise_scalings:
            out_features *= n_layers

        layers = []
        in_features = config.hidden_size
        for _ in range(config.xlora_depth - 1):
            layers.append(nn.Linear(in_features, config.xlora_size))
            layers.append(nn.ReLU())
            in_features = config.xlora_size
        layers.append(nn.Linear(in_features, out_features))
        self.head = nn.Sequential(*layers)

    def _scalings_shape(self, batch_size: int, seq_len: int):
        if self.config.layerwise_scalings:
            return (batch_size, seq_len, self.n_layers, self.n_adapters)
        return (batch_size, seq_len, self.n_adapters)

    def forward(self, hidden_states: torch.Tensor) -> torch.Tensor:
        batch_size, seq_len, _ = hidden_states.shape
        weight_dtype = self.head[-1].weight.dtype
        logits = self.head(hidden_states.to(weight_dtype))
        logits = logits.view(*self._scalings_shape(batch_size, seq_len))

        if self.config.enable_softmax:
            scalings = F.softmax(logits.float() / self.config.softmax_temperature, dim=-1)
        else:
            scalings = logits.float()

        top_k = self.config.top_k_lora
        if top_k is not None and top_k < self.n_adapters:
            # Zero everything but the k largest scalings of each token.
            _, keep = torch.topk(scalings, top_k, dim=-1)
            mask = torch.zeros_like(scalings, dtype=torch.bool).scatter(-1, keep, True)
            scalings = scalings.masked_fill(~mask, 0.0)

        return scalings.to(hidden_states.dtype)

    def dummy_scalings(
        self,
        batch_size: int,
        seq_len: int,
        device: Optional[torch.device] = None,
        dtype: torch.dtype = torch.float32,
    ) -> torch.Tensor:
        """Uniform placeholder scalings for the scaling pass."""
        return torch.full(
            self._scalings_shape(batch_size, seq_len),
            self.config.scaling_pass_value,
            device=device,
            dtype=dtype,
        )

    def global_scaling_weight(self) -> float:
        return self.config.global_scaling_weight
