"""
Configuration for the adapter-scaling inference core.

This module is the SINGLE SOURCE OF TRUTH for hyperparameters. The model,
the classifier and the adapter store all read their sizes from the
dataclasses defined here.

Three configs live here:
  - ModelConfig:      the quantized LLaMA backbone (dense or mixture-of-experts)
  - ClassifierConfig: the adapter-scaling classifier that predicts, per token,
                      how much each low-rank adapter contributes
  - LoraConfig:       one low-rank adapter (rank, alpha, target modules)

ModelConfig can be built directly, or from the metadata that ships with a
quantized weight file:
  - GGUF: key/value metadata under the "llama." prefix
  - GGML: the fixed hparams header (n_vocab, n_embd, n_head, n_layer, ...)
"""

from dataclasses import dataclass, field, asdict
from typing import List, Optional
import json
import os

from xlora_llama.errors import MissingWeight, UnsupportedConfiguration


# Rotary tables are precomputed up to this many positions.
MAX_SEQ_LEN = 4096


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters for the quantized LLaMA backbone.

    These describe the weights being loaded, they do not choose them: a
    mismatch between this config and the weight file surfaces as a
    ShapeMismatch at load time.
    """

    # ── Vocabulary ──────────────────────────────────────────────────────────
    vocab_size: int = 4096

    # ── Model Dimensions ───────────────────────────────────────────────────
    # Width of the residual stream ("embedding length" in GGUF metadata).
    dim: int = 384

    # ── Depth ──────────────────────────────────────────────────────────────
    n_layers: int = 8

    # ── Attention Heads ────────────────────────────────────────────────────
    # n_kv_heads < n_heads selects grouped-query attention: each KV head is
    # shared by a contiguous block of n_heads // n_kv_heads query heads.
    n_heads: int = 6
    n_kv_heads: int = 2

    # ── Sequence Length ────────────────────────────────────────────────────
    # Size of the precomputed rotary tables. Any position offset plus
    # sequence length beyond this is rejected.
    max_seq_len: int = MAX_SEQ_LEN

    # ── Feed-Forward Network ───────────────────────────────────────────────
    # Intermediate width of each SwiGLU unit (dense block or single expert).
    hidden_dim: int = 1024

    # ── Normalization ──────────────────────────────────────────────────────
    # GGUF files usually carry 1e-6; GGML files assume 1e-5.
    norm_eps: float = 1e-5

    # ── Positional Encoding ────────────────────────────────────────────────
    rope_theta: float = 10000.0
    # Rotary dimension count. None means "the full head dimension", which is
    # the only layout this core supports.
    rope_dim: Optional[int] = None

    # ── Mixture of Experts ─────────────────────────────────────────────────
    # n_expert <= 1 builds dense feed-forward blocks. Otherwise every layer
    # owns n_expert SwiGLU experts and routes each token to n_expert_used
    # of them.
    n_expert: int = 0
    n_expert_used: int = 0

    # ── Activations ────────────────────────────────────────────────────────
    # Dtype the quantized weights are dequantized into for compute.
    # "auto" resolves per device (see device.get_dtype).
    dtype: str = "float32"

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head (dim / n_heads)."""
        if self.dim % self.n_heads != 0:
            raise UnsupportedConfiguration(
                f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
            )
        return self.dim // self.n_heads

    @property
    def n_kv_groups(self) -> int:
        """Number of query heads served by each KV head."""
        if self.n_heads % self.n_kv_heads != 0:
            raise UnsupportedConfiguration(
                f"n_heads ({self.n_heads}) must be divisible by "
                f"n_kv_heads ({self.n_kv_heads})"
            )
        return self.n_heads // self.n_kv_heads

    @property
    def is_moe(self) -> bool:
        return self.n_expert > 1

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Called before model construction so that a bad header fails with a
        readable message instead of a shape error deep inside attention.
        """
        for name in ("vocab_size", "dim", "n_layers", "n_heads", "n_kv_heads",
                     "max_seq_len", "hidden_dim"):
            if getattr(self, name) <= 0:
                raise UnsupportedConfiguration(f"{name} must be positive")
        if self.n_kv_heads > self.n_heads:
            raise UnsupportedConfiguration(
                f"n_kv_heads ({self.n_kv_heads}) cannot exceed n_heads ({self.n_heads})"
            )
        # Both properties raise on indivisible head counts.
        head_dim = self.head_dim
        _ = self.n_kv_groups
        if head_dim % 2 != 0:
            raise UnsupportedConfiguration(
                f"head_dim ({head_dim}) must be even for rotary pairs"
            )
        if self.rope_dim is not None and self.rope_dim != head_dim:
            raise UnsupportedConfiguration(
                f"rope_dim ({self.rope_dim}) must equal head_dim ({head_dim})"
            )
        if self.is_moe and not 1 <= self.n_expert_used <= self.n_expert:
            raise UnsupportedConfiguration(
                f"n_expert_used ({self.n_expert_used}) must be in [1, {self.n_expert}]"
            )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """Reconstruct from dictionary."""
        return cls(**d)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_gguf_metadata(cls, metadata: dict) -> "ModelConfig":
        """
        Build a config from GGUF key/value metadata.

        Required keys raise MissingWeight when absent. Expert counts default
        to 0 (dense) and the rotary base to 10000.
        """
        def md_get(key):
            if key not in metadata:
                raise MissingWeight(key)
            return metadata[key]

        n_heads = int(md_get("llama.attention.head_count"))
        dim = int(md_get("llama.embedding_length"))
        return cls(
            vocab_size=int(md_get("llama.vocab_size")),
            dim=dim,
            n_layers=int(md_get("llama.block_count")),
            n_heads=n_heads,
            n_kv_heads=int(md_get("llama.attention.head_count_kv")),
            hidden_dim=int(md_get("llama.feed_forward_length")),
            norm_eps=float(md_get("llama.attention.layer_norm_rms_epsilon")),
            rope_theta=float(metadata.get("llama.rope.freq_base", 10000.0)),
            rope_dim=int(md_get("llama.rope.dimension_count")),
            n_expert=int(metadata.get("llama.expert_count", 0)),
            n_expert_used=int(metadata.get("llama.expert_used_count", 0)),
        )

    def to_gguf_metadata(self) -> dict:
        """Inverse of from_gguf_metadata (used by the synthetic weight store)."""
        return {
            "llama.vocab_size": self.vocab_size,
            "llama.embedding_length": self.dim,
            "llama.block_count": self.n_layers,
            "llama.attention.head_count": self.n_heads,
            "llama.attention.head_count_kv": self.n_kv_heads,
            "llama.feed_forward_length": self.hidden_dim,
            "llama.attention.layer_norm_rms_epsilon": self.norm_eps,
            "llama.rope.freq_base": self.rope_theta,
            "llama.rope.dimension_count": self.rope_dim or self.head_dim,
            "llama.expert_count": self.n_expert,
            "llama.expert_used_count": self.n_expert_used,
        }

    @classmethod
    def from_ggml_hparams(
        cls, hparams: dict, gqa: int = 1, hidden_dim: Optional[int] = None
    ) -> "ModelConfig":
        """
        Build a config from a GGML hparams header.

        GGML headers predate grouped-query attention, so the KV head count is
        given separately as the group size `gqa`. The format has no expert
        support and no stored epsilon or rotary base.
        """
        n_heads = int(hparams["n_head"])
        if n_heads % gqa != 0:
            raise UnsupportedConfiguration(
                f"n_head ({n_heads}) must be divisible by gqa ({gqa})"
            )
        config = cls(
            vocab_size=int(hparams["n_vocab"]),
            dim=int(hparams["n_embd"]),
            n_layers=int(hparams["n_layer"]),
            n_heads=n_heads,
            n_kv_heads=n_heads // gqa,
            norm_eps=1e-5,
            rope_theta=10000.0,
        )
        if hidden_dim is not None:
            config.hidden_dim = hidden_dim
        return config


@dataclass
class ClassifierConfig:
    """
    Hyperparameters for the adapter-scaling classifier.

    The classifier reads the backbone's final hidden states during the
    scaling pass and emits one coefficient per token per adapter (or per
    token per adapted layer per adapter when layerwise_scalings is set).
    """

    # Number of low-rank adapters the classifier mixes.
    n_adapters: int = 2

    # Width of the hidden states fed in (the backbone's dim).
    hidden_size: int = 384

    # ── Classifier head ────────────────────────────────────────────────────
    # depth 1 is a single linear projection; deeper heads insert
    # (depth - 1) hidden layers of width xlora_size with ReLU between them.
    xlora_depth: int = 1
    xlora_size: int = 2048

    # ── Output shaping ─────────────────────────────────────────────────────
    enable_softmax: bool = True
    softmax_temperature: float = 1.0
    # One scaling vector per adapted layer instead of one shared vector.
    layerwise_scalings: bool = False
    # Keep only the k largest scalings per token (None keeps all).
    top_k_lora: Optional[int] = None

    # ── Scaling pass ───────────────────────────────────────────────────────
    # Uniform value filled into the placeholder scalings used while the
    # classifier observes the backbone.
    scaling_pass_value: float = 0.0

    # Single global multiplier applied on top of every adapter scaling.
    global_scaling_weight: float = 1.0

    def validate(self) -> None:
        if self.n_adapters <= 0:
            raise UnsupportedConfiguration("n_adapters must be positive")
        if self.xlora_depth <= 0:
            raise UnsupportedConfiguration("xlora_depth must be positive")
        if self.softmax_temperature <= 0:
            raise UnsupportedConfiguration("softmax_temperature must be positive")
        if self.top_k_lora is not None and not 1 <= self.top_k_lora <= self.n_adapters:
            raise UnsupportedConfiguration(
                f"top_k_lora ({self.top_k_lora}) must be in [1, {self.n_adapters}]"
            )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ClassifierConfig":
        return cls(**d)


@dataclass
class LoraConfig:
    """
    One low-rank adapter.

    The adapter delta is up(down(x)) * (alpha / rank), added only to the
    modules whose name ends with one of target_modules.
    """

    rank: int = 8
    alpha: float = 16.0
    target_modules: List[str] = field(
        default_factory=lambda: ["q_proj", "k_proj", "v_proj", "o_proj"]
    )

    @property
    def scale(self) -> float:
        return self.alpha / self.rank

    def targets(self, module_name: str) -> bool:
        """True when this adapter applies to the named module."""
        # Expert modules carry a trailing ".{e}" index.
        parts = module_name.split(".")
        if parts[-1].isdigit():
            parts = parts[:-1]
        return parts[-1] in self.target_modules

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "LoraConfig":
        return cls(**d)
