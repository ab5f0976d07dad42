"""
Weight provider interface, tensor naming schemes and synthetic weights.

Parsing quantized weight files is outside this package: whatever does it
only needs to expose `remove_or_fetch(name) -> QuantizedTensor` plus the
file's metadata. TensorWeightStore is the in-memory implementation used by
the CLI and the tests; it also round-trips through torch.save files.

NAMING SCHEMES:
  ┌──────────────┬───────────────────────────────────┬────────────────────────────┐
  │ key          │ GGML                              │ GGUF                       │
  ├──────────────┼───────────────────────────────────┼────────────────────────────┤
  │ tok_embd     │ tok_embeddings.weight             │ token_embd.weight          │
  │ norm         │ norm.weight                       │ output_norm.weight         │
  │ output       │ output.weight                     │ output.weight              │
  │ attn_q/k/v   │ layers.{i}.attention.wq/wk/wv     │ blk.{i}.attn_q/attn_k/...  │
  │ attn_output  │ layers.{i}.attention.wo           │ blk.{i}.attn_output        │
  │ attn_norm    │ layers.{i}.attention_norm         │ blk.{i}.attn_norm          │
  │ ffn_norm     │ layers.{i}.ffn_norm               │ blk.{i}.ffn_norm           │
  │ ffn_gate     │ layers.{i}.feed_forward.w1        │ blk.{i}.ffn_gate[.{e}]     │
  │ ffn_down     │ layers.{i}.feed_forward.w2        │ blk.{i}.ffn_down[.{e}]     │
  │ ffn_up       │ layers.{i}.feed_forward.w3        │ blk.{i}.ffn_up[.{e}]       │
  │ ffn_gate_inp │ (dense only)                      │ blk.{i}.ffn_gate_inp       │
  └──────────────┴───────────────────────────────────┴────────────────────────────┘
  (every per-layer name ends in ".weight")
"""

from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

import torch

from xlora_llama.config import LoraConfig, ModelConfig
from xlora_llama.errors import MissingWeight, UnsupportedConfiguration
from xlora_llama.lora import AdapterStore
from xlora_llama.quant import QuantizedTensor


class WeightNaming(str, Enum):
    GGML = "ggml"
    GGUF = "gguf"


_NAMES = {
    WeightNaming.GGML: {
        "tok_embd": "tok_embeddings.weight",
        "norm": "norm.weight",
        "output": "output.weight",
        "attn_q": "layers.{i}.attention.wq.weight",
        "attn_k": "layers.{i}.attention.wk.weight",
        "attn_v": "layers.{i}.attention.wv.weight",
        "attn_output": "layers.{i}.attention.wo.weight",
        "attn_norm": "layers.{i}.attention_norm.weight",
        "ffn_norm": "layers.{i}.ffn_norm.weight",
        "ffn_gate": "layers.{i}.feed_forward.w1.weight",
        "ffn_down": "layers.{i}.feed_forward.w2.weight",
        "ffn_up": "layers.{i}.feed_forward.w3.weight",
    },
    WeightNaming.GGUF: {
        "tok_embd": "token_embd.weight",
        "norm": "output_norm.weight",
        "output": "output.weight",
        "attn_q": "blk.{i}.attn_q.weight",
        "attn_k": "blk.{i}.attn_k.weight",
        "attn_v": "blk.{i}.attn_v.weight",
        "attn_output": "blk.{i}.attn_output.weight",
        "attn_norm": "blk.{i}.attn_norm.weight",
        "ffn_norm": "blk.{i}.ffn_norm.weight",
        "ffn_gate": "blk.{i}.ffn_gate.weight",
        "ffn_down": "blk.{i}.ffn_down.weight",
        "ffn_up": "blk.{i}.ffn_up.weight",
        "ffn_gate_inp": "blk.{i}.ffn_gate_inp.weight",
        "ffn_gate.e": "blk.{i}.ffn_gate.{e}.weight",
        "ffn_down.e": "blk.{i}.ffn_down.{e}.weight",
        "ffn_up.e": "blk.{i}.ffn_up.{e}.weight",
    },
}

# Adapter target names follow the HuggingFace module layout.
_ADAPTER_MODULES = {
    "attn_q": "self_attn.q_proj",
    "attn_k": "self_attn.k_proj",
    "attn_v": "self_attn.v_proj",
    "attn_output": "self_attn.o_proj",
    "ffn_gate": "mlp.gate_proj",
    "ffn_down": "mlp.down_proj",
    "ffn_up": "mlp.up_proj",
}

ATTENTION_KEYS = ("attn_q", "attn_k", "attn_v", "attn_output")
FFN_KEYS = ("ffn_gate", "ffn_down", "ffn_up")


def tensor_name(
    naming: WeightNaming,
    key: str,
    layer: Optional[int] = None,
    expert: Optional[int] = None,
) -> str:
    """Resolve a logical weight key to the provider's tensor name."""
    naming = WeightNaming(naming)
    table = _NAMES[naming]
    if expert is not None:
        key = f"{key}.e"
    if key not in table:
        raise UnsupportedConfiguration(
            f"{naming.value} naming has no tensor for '{key}' "
            f"(mixture-of-experts weights need GGUF naming)"
        )
    return table[key].format(i=layer, e=expert)


def adapter_module_name(key: str, layer: int, expert: Optional[int] = None) -> str:
    name = f"model.layers.{layer}.{_ADAPTER_MODULES[key]}"
    if expert is not None:
        name = f"{name}.{expert}"
    return name


class WeightProvider(Protocol):
    """What the model needs from a quantized weight file."""

    naming: WeightNaming
    metadata: dict

    def remove_or_fetch(self, name: str) -> QuantizedTensor:
        ...


class TensorWeightStore:
    """
    Named QuantizedTensors plus file metadata.

    With consume=True every fetch removes the tensor (GGML loaders do this
    to free memory as they go); otherwise fetches leave the store intact so
    several models can be built from it.
    """

    def __init__(
        self,
        tensors: Optional[Dict[str, QuantizedTensor]] = None,
        metadata: Optional[dict] = None,
        naming: WeightNaming = WeightNaming.GGUF,
        consume: bool = False,
    ):
        self.tensors: Dict[str, QuantizedTensor] = dict(tensors or {})
        self.metadata = dict(metadata or {})
        self.naming = WeightNaming(naming)
        self.consume = consume

    def __contains__(self, name: str) -> bool:
        return name in self.tensors

    def __len__(self) -> int:
        return len(self.tensors)

    def names(self) -> List[str]:
        return sorted(self.tensors)

    def insert(self, name: str, tensor: QuantizedTensor) -> None:
        self.tensors[name] = tensor

    def remove_or_fetch(self, name: str) -> QuantizedTensor:
        if name not in self.tensors:
            raise MissingWeight(name)
        if self.consume:
            return self.tensors.pop(name)
        return self.tensors[name]

    def save(self, path: str) -> None:
        """Write every tensor (codes + scales) and the metadata to a .pt file."""
        torch.save(
            {
                "naming": self.naming.value,
                "metadata": self.metadata,
                "tensors": {
                    name: {
                        "qtype": t.qtype.value,
                        "shape": list(t.shape),
                        "data": t.data,
                        "scales": t.scales,
                    }
                    for name, t in self.tensors.items()
                },
            },
            path,
        )

    @classmethod
    def load(
        cls, path: str, device: Optional[torch.device] = None, consume: bool = False
    ) -> "TensorWeightStore":
        blob = torch.load(path, map_location=device or "cpu", weights_only=True)
        tensors = {
            name: QuantizedTensor(t["qtype"], tuple(t["shape"]), t["data"], t["scales"])
            for name, t in blob["tensors"].items()
        }
        return cls(tensors, blob["metadata"], blob["naming"], consume=consume)


# ═══════════════════════════════════════════════════════════════════════════
# Synthetic weights (smoke runs, benchmarks, tests)
# ═══════════════════════════════════════════════════════════════════════════

def projection_shapes(config: ModelConfig) -> Dict[str, Tuple[int, int]]:
    """(out_features, in_features) of every per-layer projection."""
    head_dim = config.head_dim
    return {
        "attn_q": (config.n_heads * head_dim, config.dim),
        "attn_k": (config.n_kv_heads * head_dim, config.dim),
        "attn_v": (config.n_kv_heads * head_dim, config.dim),
        "attn_output": (config.dim, config.n_heads * head_dim),
        "ffn_gate": (config.hidden_dim, config.dim),
        "ffn_up": (config.hidden_dim, config.dim),
        "ffn_down": (config.dim, config.hidden_dim),
    }


def _experts(config: ModelConfig) -> Iterable[Optional[int]]:
    return range(config.n_expert) if config.is_moe else [None]


def synthetic_weights(
    config: ModelConfig,
    naming: WeightNaming = WeightNaming.GGUF,
    qtype: str = "F32",
    seed: int = 0,
    std: float = 0.02,
) -> TensorWeightStore:
    """
    Random weights with the exact names and shapes a real file would have.

    Norm scales are stored as F32 ones, the way GGUF files keep them.
    """
    config.validate()
    naming = WeightNaming(naming)
    gen = torch.Generator().manual_seed(seed)

    def rand(*shape):
        return QuantizedTensor.from_float(torch.randn(*shape, generator=gen) * std, qtype)

    def ones(n):
        return QuantizedTensor.from_float(torch.ones(n), "F32")

    store = TensorWeightStore(naming=naming)
    store.insert(tensor_name(naming, "tok_embd"), rand(config.vocab_size, config.dim))
    store.insert(tensor_name(naming, "norm"), ones(config.dim))
    store.insert(tensor_name(naming, "output"), rand(config.vocab_size, config.dim))

    shapes = projection_shapes(config)
    for i in range(config.n_layers):
        for key in ATTENTION_KEYS:
            store.insert(tensor_name(naming, key, i), rand(*shapes[key]))
        store.insert(tensor_name(naming, "attn_norm", i), ones(config.dim))
        store.insert(tensor_name(naming, "ffn_norm", i), ones(config.dim))
        if config.is_moe:
            store.insert(
                tensor_name(naming, "ffn_gate_inp", i),
                rand(config.n_expert, config.dim),
            )
        for e in _experts(config):
            for key in FFN_KEYS:
                store.insert(tensor_name(naming, key, i, e), rand(*shapes[key]))

    if naming == WeightNaming.GGUF:
        store.metadata = config.to_gguf_metadata()
    else:
        store.metadata = {
            "n_vocab": config.vocab_size,
            "n_embd": config.dim,
            "n_head": config.n_heads,
            "n_layer": config.n_layers,
        }
    return store


def synthetic_adapters(
    config: ModelConfig,
    n_adapters: int = 2,
    rank: int = 4,
    alpha: float = 8.0,
    target_modules: Optional[List[str]] = None,
    seed: int = 0,
    std: float = 0.02,
) -> AdapterStore:
    """Random adapters covering every targeted projection of the model."""
    gen = torch.Generator().manual_seed(seed)
    targets = target_modules or ["q_proj", "k_proj", "v_proj", "o_proj"]
    adapters = [
        (f"adapter_{a}", LoraConfig(rank=rank, alpha=alpha, target_modules=list(targets)))
        for a in range(n_adapters)
    ]

    shapes = projection_shapes(config)
    tensors = {}
    for i in range(config.n_layers):
        modules = [(k, None) for k in ATTENTION_KEYS]
        modules += [(k, e) for e in _experts(config) for k in FFN_KEYS]
        for key, expert in modules:
            module_name = adapter_module_name(key, i, expert)
            out_features, in_features = shapes[key]
            for name, cfg in adapters:
                if not cfg.targets(module_name):
                    continue
                tensors[f"{name}.{module_name}.lora_A.weight"] = (
                    torch.randn(rank, in_features, generator=gen) * std
                )
                tensors[f"{name}.{module_name}.lora_B.weight"] = (
                    torch.randn(out_features, rank, generator=gen) * std
                )
    return AdapterStore(adapters, tensors)
