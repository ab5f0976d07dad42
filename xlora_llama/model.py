"""
Quantized LLaMA with classifier-mixed low-rank adapters.

Every projection in the network is an AdaptedQuantizedLinear: a quantized
base matrix plus any number of LoRA deltas whose per-token weights are
predicted at inference time by a scaling classifier. Because the classifier
has to look at the model before it can decide how to weight the adapters,
each step runs the layer stack twice (the "dual pass").

ARCHITECTURE OVERVIEW (bottom-up reading order):
  1. RMSNorm          Normalization layer with a loaded scale vector
  2. RoPE             Rotary embeddings, adjacent-pair convention, per-batch offsets
  3. FeedForward      SwiGLU unit over three adapted projections
  4. MoEFeedForward   Top-k token routing over N FeedForward experts
  5. Attention        Grouped-query attention with an incremental KV cache
  6. TransformerBlock norm → attention → residual → norm → FFN → residual
  7. XLoraLlama       Embedding, N blocks, output head, dual-pass orchestration

DUAL PASS (one generation step):
  ┌───────────────┬────────────────────────────────────────────────────────┐
  │ Scaling pass  │ Full context, placeholder scalings, SCALING arena      │
  │ Classifier    │ Final hidden states → AdapterScalings                  │
  │ Final pass    │ New tokens (or full context with no_cache), real       │
  │               │ scalings, PRIMARY arena → logits at the last position  │
  └───────────────┴────────────────────────────────────────────────────────┘
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple, Union

import torch
import torch.nn as nn
import torch.nn.functional as F

from xlora_llama.cache import CacheArena, CausalMaskCache, KVCache, KVPair
from xlora_llama.classifier import AdapterScalingClassifier, ScalingClassifier
from xlora_llama.config import ClassifierConfig, ModelConfig
from xlora_llama.device import get_dtype
from xlora_llama.errors import (
    NumericBackendFailure,
    ShapeMismatch,
    UnsupportedConfiguration,
    XLoraError,
)
from xlora_llama.lora import AdaptedQuantizedLinear, AdapterStore
from xlora_llama.quant import QuantizedMatmul, QuantizedTensor
from xlora_llama.weights import (
    ATTENTION_KEYS,
    FFN_KEYS,
    WeightNaming,
    WeightProvider,
    adapter_module_name,
    projection_shapes,
    tensor_name,
)


logger = logging.getLogger(__name__)

Offsets = Union[Sequence[int], torch.Tensor]


# ═══════════════════════════════════════════════════════════════════════════
# 1. RMSNorm
# ═══════════════════════════════════════════════════════════════════════════

class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization.

        RMSNorm(x) = x / sqrt(mean(x²) + eps) * gamma

    gamma comes from the weight file (attn_norm / ffn_norm / output_norm) and
    is never trained here, so it is a frozen parameter.
    """

    def __init__(self, weight: torch.Tensor, eps: float = 1e-5):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(weight, requires_grad=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # Reduce in fp32, then cast back to the activation dtype.
        rms_inv = torch.rsqrt(x.float().pow(2).mean(-1, keepdim=True) + self.eps)
        return (x.float() * rms_inv).type_as(x) * self.weight.type_as(x)


# ═══════════════════════════════════════════════════════════════════════════
# 2. Rotary Positional Embeddings (RoPE)
# ═══════════════════════════════════════════════════════════════════════════

def precompute_rope_frequencies(
    head_dim: int,
    max_seq_len: int,
    theta: float = 10000.0,
    device: Optional[torch.device] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Precompute the rotary cos/sin tables.

    Pair p at absolute position t is rotated by angle t * theta^(-2p/head_dim).

    Returns:
        (cos, sin), each of shape (max_seq_len, head_dim // 2).
    """
    dim_indices = torch.arange(0, head_dim, 2, device=device).float()
    freqs = 1.0 / (theta ** (dim_indices / head_dim))
    positions = torch.arange(max_seq_len, device=device).float()
    angles = torch.outer(positions, freqs)
    return angles.cos(), angles.sin()


def apply_rotary_embeddings(
    x: torch.Tensor,
    freqs_cos: torch.Tensor,
    freqs_sin: torch.Tensor,
) -> torch.Tensor:
    """
    Rotate adjacent dimension pairs (x[2p], x[2p+1]) of a query or key tensor.

    THE ROTATION FORMULA:
      y0 = x0 · cos - x1 · sin
      y1 = x0 · sin + x1 · cos

    Pairs are ADJACENT elements, not the first half against the second half.
    GGML-converted LLaMA weights are laid out for this convention; the
    block-halves variant gives wrong attention on the same weights.

    Args:
        x: (batch, n_heads, seq_len, head_dim).
        freqs_cos: cos values broadcastable to (batch, n_heads, seq_len, head_dim // 2),
            e.g. (batch, 1, seq_len, head_dim // 2) from RotaryEmbedding.lookup.
        freqs_sin: sin values, same shape as freqs_cos.

    Returns:
        Rotated tensor with the shape and dtype of x.
    """
    x_pairs = x.float().reshape(*x.shape[:-1], -1, 2)
    x0 = x_pairs[..., 0]
    x1 = x_pairs[..., 1]

    y0 = x0 * freqs_cos - x1 * freqs_sin
    y1 = x0 * freqs_sin + x1 * freqs_cos

    return torch.stack([y0, y1], dim=-1).flatten(-2).type_as(x)


class RotaryEmbedding(nn.Module):
    """
    The rotary tables plus per-batch position lookup.

    Each batch row carries its own absolute start position, so rows at
    different decode depths can share one forward call.
    """

    def __init__(self, head_dim: int, max_seq_len: int, theta: float = 10000.0):
        super().__init__()
        self.max_seq_len = max_seq_len
        cos, sin = precompute_rope_frequencies(head_dim, max_seq_len, theta)
        self.register_buffer("freqs_cos", cos, persistent=False)
        self.register_buffer("freqs_sin", sin, persistent=False)

    def lookup(
        self, position_offsets: Offsets, seq_len: int
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Gather the table rows for positions offset..offset+seq_len per row.

        Returns:
            (cos, sin), each (batch, 1, seq_len, head_dim // 2).
        """
        offsets = torch.as_tensor(position_offsets, dtype=torch.long).reshape(-1).cpu()
        if offsets.numel() and (
            int(offsets.min()) < 0 or int(offsets.max()) + seq_len > self.max_seq_len
        ):
            raise UnsupportedConfiguration(
                f"positions up to {int(offsets.max()) + seq_len} exceed the rotary "
                f"table length {self.max_seq_len}"
            )
        positions = offsets.unsqueeze(1) + torch.arange(seq_len).unsqueeze(0)
        positions = positions.to(self.freqs_cos.device)
        return self.freqs_cos[positions].unsqueeze(1), self.freqs_sin[positions].unsqueeze(1)

    def forward(self, x: torch.Tensor, position_offsets: Offsets) -> torch.Tensor:
        """Rotate x of shape (batch, n_heads, seq_len, head_dim)."""
        if len(position_offsets) != x.shape[0]:
            raise ShapeMismatch(
                f"{len(position_offsets)} position offsets for batch of {x.shape[0]}"
            )
        cos, sin = self.lookup(position_offsets, x.shape[2])
        return apply_rotary_embeddings(x, cos, sin)


# ═══════════════════════════════════════════════════════════════════════════
# 3. SwiGLU Feed-Forward Network
# ═══════════════════════════════════════════════════════════════════════════

class FeedForward(nn.Module):
    """
    SwiGLU unit: down(silu(gate(x)) ⊙ up(x)).

    gate/up/down are adapted projections (GGML w1/w3/w2) and all three read
    the same scalings and global weight.
    """

    def __init__(
        self,
        w_gate: AdaptedQuantizedLinear,
        w_up: AdaptedQuantizedLinear,
        w_down: AdaptedQuantizedLinear,
    ):
        super().__init__()
        self.w_gate = w_gate
        self.w_up = w_up
        self.w_down = w_down

    def forward(
        self,
        x: torch.Tensor,
        scalings: Optional[torch.Tensor] = None,
        global_weight: float = 1.0,
    ) -> torch.Tensor:
        gate = F.silu(self.w_gate(x, scalings, global_weight))
        up = self.w_up(x, scalings, global_weight)
        return self.w_down(gate * up, scalings, global_weight)


# ═══════════════════════════════════════════════════════════════════════════
# 4. Mixture of Experts
# ═══════════════════════════════════════════════════════════════════════════

def route_tokens(
    routing_weights: torch.Tensor, k: int
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Pick the top-k experts per token and renormalize their weights.

    Ties are broken by ascending expert index: a stable ascending sort of the
    negated weights keeps equal weights in their original (index) order.

    Args:
        routing_weights: (n_tokens, n_expert) softmax probabilities.
        k: Experts used per token.

    Returns:
        (experts, weights), both (n_tokens, k). weights sum to 1 per row.
    """
    _, sorted_experts = torch.sort(-routing_weights, dim=-1, stable=True)
    experts = sorted_experts[:, :k]
    weights = routing_weights.gather(-1, experts)
    weights = weights / weights.sum(dim=-1, keepdim=True)
    return experts, weights


class MoEFeedForward(nn.Module):
    """
    Token-routed mixture of SwiGLU experts.

    HOW IT WORKS:
      1. A plain quantized gate (no adapters) scores every expert per token.
      2. route_tokens keeps the top-k and renormalizes them.
      3. Each expert runs only on the tokens routed to it; its output rows are
         scaled by the routing weight and scatter-added back into place.
    Experts that receive no tokens are skipped, so they contribute nothing.
    """

    def __init__(self, gate: QuantizedMatmul, experts: Sequence[FeedForward], n_expert_used: int):
        super().__init__()
        if not 1 <= n_expert_used <= len(experts):
            raise UnsupportedConfiguration(
                f"n_expert_used ({n_expert_used}) must be in [1, {len(experts)}]"
            )
        self.gate = gate
        self.experts = nn.ModuleList(experts)
        self.n_expert_used = n_expert_used

    def forward(
        self,
        x: torch.Tensor,
        scalings: Optional[torch.Tensor] = None,
        global_weight: float = 1.0,
    ) -> torch.Tensor:
        batch_size, seq_len, dim = x.shape
        tokens = x.reshape(-1, dim)

        # ── Step 1: Router ─────────────────────────────────────────────────
        routing_weights = F.softmax(self.gate(tokens).float(), dim=-1)

        # ── Step 2: Top-k + renormalize ────────────────────────────────────
        selected, weights = route_tokens(routing_weights, self.n_expert_used)

        # Scalings follow the tokens: (batch, seq, ...) → (n_tokens, ...)
        token_scalings = None
        if scalings is not None:
            token_scalings = scalings.reshape(batch_size * seq_len, *scalings.shape[2:])

        # ── Step 3: Dispatch, weight, scatter-add ──────────────────────────
        out = torch.zeros_like(tokens)
        for expert_idx, expert in enumerate(self.experts):
            token_idx, slot = torch.where(selected == expert_idx)
            if token_idx.numel() == 0:
                continue
            expert_scalings = None if token_scalings is None else token_scalings[token_idx]
            y = expert(tokens[token_idx], expert_scalings, global_weight)
            y = y * weights[token_idx, slot].unsqueeze(-1).to(y.dtype)
            out.index_add_(0, token_idx, y)

        return out.reshape(batch_size, seq_len, dim)


# ═══════════════════════════════════════════════════════════════════════════
# 5. Grouped Query Attention with KV Cache
# ═══════════════════════════════════════════════════════════════════════════

class Attention(nn.Module):
    """
    Grouped-query attention over adapted quantized projections.

    KV cache entries are (batch, n_kv_heads, cached_len, head_dim). They are
    stored BEFORE head replication, so the cache grows by n_kv_heads, not
    n_heads, per position.
    """

    def __init__(
        self,
        config: ModelConfig,
        wq: AdaptedQuantizedLinear,
        wk: AdaptedQuantizedLinear,
        wv: AdaptedQuantizedLinear,
        wo: AdaptedQuantizedLinear,
    ):
        super().__init__()
        self.n_heads = config.n_heads
        self.n_kv_heads = config.n_kv_heads
        self.head_dim = config.head_dim
        self.n_kv_groups = config.n_kv_groups
        self.wq = wq
        self.wk = wk
        self.wv = wv
        self.wo = wo

    def forward(
        self,
        x: torch.Tensor,
        freqs_cos: torch.Tensor,
        freqs_sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        kv_cache: Optional[KVPair] = None,
        scalings: Optional[torch.Tensor] = None,
        global_weight: float = 1.0,
    ) -> Tuple[torch.Tensor, KVPair]:
        """
        Args:
            x: (batch, seq_len, dim).
            freqs_cos, freqs_sin: Rotary rows for these positions,
                (batch, 1, seq_len, head_dim // 2).
            mask: Boolean causal mask (True = masked), or None for seq_len 1.
            kv_cache: (cached_k, cached_v) from earlier calls on this arena.
            scalings: AdapterScalings for the tokens in x.
            global_weight: Global adapter scaling weight.

        Returns:
            (output (batch, seq_len, dim), updated (k, v) cache entry)
        """
        batch_size, seq_len, _ = x.shape

        # ── Step 1: Project to Q, K, V and split heads ─────────────────────
        q = self.wq(x, scalings, global_weight)
        k = self.wk(x, scalings, global_weight)
        v = self.wv(x, scalings, global_weight)
        q = q.view(batch_size, seq_len, self.n_heads, self.head_dim).transpose(1, 2)
        k = k.view(batch_size, seq_len, self.n_kv_heads, self.head_dim).transpose(1, 2)
        v = v.view(batch_size, seq_len, self.n_kv_heads, self.head_dim).transpose(1, 2)
        # q: (batch, n_heads, seq, head_dim); k, v: (batch, n_kv_heads, seq, head_dim)

        # ── Step 2: RoPE on Q and K (NOT V) ────────────────────────────────
        q = apply_rotary_embeddings(q, freqs_cos, freqs_sin)
        k = apply_rotary_embeddings(k, freqs_cos, freqs_sin)

        # ── Step 3: Append to the cache ────────────────────────────────────
        if kv_cache is not None:
            cached_k, cached_v = kv_cache
            k = torch.cat([cached_k, k], dim=2)
            v = torch.cat([cached_v, v], dim=2)
        new_kv_cache = (k, v)
        kv_len = k.shape[2]

        # ── Step 4: GQA head expansion ─────────────────────────────────────
        # Contiguous blocks: [KV0, KV0, KV1, KV1] for 4 query heads, 2 KV heads
        if self.n_kv_groups > 1:
            k = k.repeat_interleave(self.n_kv_groups, dim=1)
            v = v.repeat_interleave(self.n_kv_groups, dim=1)

        # ── Step 5: Scaled dot-product scores + causal mask ────────────────
        scores = torch.matmul(q, k.transpose(-2, -1)) / math.sqrt(self.head_dim)
        # scores: (batch, n_heads, seq_len, kv_len)
        if mask is not None:
            if mask.shape[-1] < kv_len:
                # Cached positions are all in the past: always visible.
                visible = torch.zeros(
                    seq_len, kv_len - mask.shape[-1], dtype=torch.bool, device=mask.device
                )
                mask = torch.cat([visible, mask], dim=-1)
            scores = scores.masked_fill(mask, float("-inf"))
        probs = F.softmax(scores.float(), dim=-1).type_as(q)

        # ── Step 6: Weighted sum, merge heads, project ─────────────────────
        output = torch.matmul(probs, v)
        output = output.transpose(1, 2).contiguous().view(batch_size, seq_len, -1)
        return self.wo(output, scalings, global_weight), new_kv_cache


# ═══════════════════════════════════════════════════════════════════════════
# 6. Transformer Block
# ═══════════════════════════════════════════════════════════════════════════

class TransformerBlock(nn.Module):
    """
    One decoder layer (pre-norm):

        h   = x + Attention(RMSNorm(x))
        out = h + FFN(RMSNorm(h))

    The FFN is either a dense FeedForward or a MoEFeedForward, chosen once at
    load time. Both expose the same forward(x, scalings, global_weight).
    """

    def __init__(
        self,
        layer_id: int,
        attention: Attention,
        feed_forward: Union[FeedForward, MoEFeedForward],
        attention_norm: RMSNorm,
        ffn_norm: RMSNorm,
    ):
        super().__init__()
        self.layer_id = layer_id
        self.attention_norm = attention_norm
        self.attention = attention
        self.ffn_norm = ffn_norm
        self.feed_forward = feed_forward

    def forward(
        self,
        x: torch.Tensor,
        freqs_cos: torch.Tensor,
        freqs_sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        kv_cache: Optional[KVPair] = None,
        scalings: Optional[torch.Tensor] = None,
        global_weight: float = 1.0,
    ) -> Tuple[torch.Tensor, KVPair]:
        attn_out, new_kv_cache = self.attention(
            self.attention_norm(x),
            freqs_cos,
            freqs_sin,
            mask=mask,
            kv_cache=kv_cache,
            scalings=scalings,
            global_weight=global_weight,
        )
        h = x + attn_out
        out = h + self.feed_forward(self.ffn_norm(h), scalings, global_weight)
        return out, new_kv_cache


# ═══════════════════════════════════════════════════════════════════════════
# 7. The Complete Model
# ═══════════════════════════════════════════════════════════════════════════

class XLoraLlama(nn.Module):
    """
    Quantized LLaMA backbone driven by an adapter-scaling classifier.

    Construction pulls every tensor from a WeightProvider (see weights.py for
    the GGML and GGUF name tables) and builds the adapted projections from an
    optional AdapterStore. Adapted projections register with the store in
    load order (q, k, v, o, then gate, down, up per expert), which fixes the
    layer axis of layerwise scalings.

    Owned state (per instance, never module-level):
      - rotary tables
      - causal mask memo
      - KV cache with PRIMARY and SCALING arenas

    Without a classifier the model runs a single pass with every adapter
    disabled.

    The activation dtype is resolved from config.dtype unless dtype is given.
    """

    def __init__(
        self,
        config: ModelConfig,
        weights: WeightProvider,
        adapters: Optional[AdapterStore] = None,
        classifier: Optional[AdapterScalingClassifier] = None,
        classifier_config: Optional[ClassifierConfig] = None,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ):
        super().__init__()
        config.validate()
        self.config = config
        if dtype is None:
            dtype = get_dtype(config.dtype, torch.device(device or "cpu"))
        self.dtype = dtype
        self.adapters = adapters
        naming = WeightNaming(weights.naming)
        if config.is_moe and naming == WeightNaming.GGML:
            raise UnsupportedConfiguration("GGML weight files cannot hold mixture-of-experts layers")

        def fetch(key, shape, layer=None, expert=None) -> QuantizedTensor:
            name = tensor_name(naming, key, layer, expert)
            tensor = weights.remove_or_fetch(name)
            if tuple(tensor.shape) != tuple(shape):
                raise ShapeMismatch(
                    f"'{name}' has shape {tuple(tensor.shape)}, expected {tuple(shape)}"
                )
            return tensor

        def adapted(key, layer, expert=None) -> AdaptedQuantizedLinear:
            weight = fetch(key, shapes[key], layer, expert)
            return AdaptedQuantizedLinear.from_store(
                weight, adapters, adapter_module_name(key, layer, expert)
            )

        def norm(key, layer=None) -> RMSNorm:
            weight = fetch(key, (config.dim,), layer).dequantize(dtype=torch.float32)
            return RMSNorm(weight, eps=config.norm_eps)

        shapes = projection_shapes(config)

        # ── Token Embeddings ───────────────────────────────────────────────
        # Dequantized once: lookups are gathers, not matmuls.
        embedding = fetch("tok_embd", (config.vocab_size, config.dim))
        self.tok_embeddings = nn.Embedding.from_pretrained(
            embedding.dequantize(dtype=dtype), freeze=True
        )

        # ── Transformer Layers ─────────────────────────────────────────────
        layers = []
        for i in range(config.n_layers):
            wq, wk, wv, wo = (adapted(key, i) for key in ATTENTION_KEYS)
            attention = Attention(config, wq, wk, wv, wo)
            if config.is_moe:
                gate = QuantizedMatmul(fetch("ffn_gate_inp", (config.n_expert, config.dim), i))
                experts = []
                for e in range(config.n_expert):
                    w_gate, w_down, w_up = (adapted(key, i, e) for key in FFN_KEYS)
                    experts.append(FeedForward(w_gate, w_up, w_down))
                feed_forward = MoEFeedForward(gate, experts, config.n_expert_used)
            else:
                w_gate, w_down, w_up = (adapted(key, i) for key in FFN_KEYS)
                feed_forward = FeedForward(w_gate, w_up, w_down)
            layers.append(
                TransformerBlock(
                    i, attention, feed_forward, norm("attn_norm", i), norm("ffn_norm", i)
                )
            )
        self.layers = nn.ModuleList(layers)

        # ── Final Norm + Output Head ───────────────────────────────────────
        self.norm = norm("norm")
        self.output = QuantizedMatmul(fetch("output", (config.vocab_size, config.dim)))

        # ── Per-instance caches ────────────────────────────────────────────
        self.rotary = RotaryEmbedding(config.head_dim, config.max_seq_len, config.rope_theta)
        self.mask_cache = CausalMaskCache()
        self.kv_cache = KVCache(config.n_layers)

        # ── Classifier ─────────────────────────────────────────────────────
        if classifier is None and classifier_config is not None:
            n_registered = adapters.n_registered if adapters is not None else 1
            classifier = ScalingClassifier(classifier_config, n_layers=max(n_registered, 1))
            if adapters is not None and adapters.classifier_state is not None:
                classifier.load_state_dict(adapters.classifier_state)
        self.classifier = classifier

        if device is not None:
            self.to(device)

        logger.info(
            "loaded %d-layer %s model (%s naming): %d adapter(s), %d adapted projection(s), %s",
            config.n_layers,
            f"MoE {config.n_expert_used}/{config.n_expert}" if config.is_moe else "dense",
            naming.value,
            adapters.n_adapters if adapters is not None else 0,
            len(adapters.registered) if adapters is not None else 0,
            "classifier-driven" if classifier is not None else "single pass",
        )

    @classmethod
    def from_gguf(cls, weights: WeightProvider, **kwargs) -> "XLoraLlama":
        """Build from a GGUF-style provider, reading hyperparameters from its metadata."""
        config = ModelConfig.from_gguf_metadata(weights.metadata)
        return cls(config, weights, **kwargs)

    @classmethod
    def from_ggml(
        cls,
        weights: WeightProvider,
        gqa: int = 1,
        hidden_dim: Optional[int] = None,
        **kwargs,
    ) -> "XLoraLlama":
        """Build from a GGML-style provider (hparams header + group size)."""
        config = ModelConfig.from_ggml_hparams(weights.metadata, gqa=gqa, hidden_dim=hidden_dim)
        return cls(config, weights, **kwargs)

    @property
    def device(self) -> torch.device:
        return self.rotary.freqs_cos.device

    def global_scaling_weight(self) -> float:
        if self.classifier is None:
            return 1.0
        return float(self.classifier.global_scaling_weight())

    def reset_cache(self) -> None:
        """Drop both cache arenas (start of a new session, or after an error)."""
        self.kv_cache.reset()

    def inner_forward(
        self,
        input_ids: torch.Tensor,
        position_offsets: Offsets,
        scalings: Optional[torch.Tensor],
        arena: CacheArena,
    ) -> torch.Tensor:
        """
        Run the layer stack once against one cache arena.

        Args:
            input_ids: (batch, seq_len) token ids.
            position_offsets: Absolute start position of each batch row.
            scalings: AdapterScalings for these tokens, or None (adapters off).
            arena: Which cache arena this pass reads and appends to.

        Returns:
            Final-normed hidden states (batch, seq_len, dim).
        """
        batch_size, seq_len = input_ids.shape
        if len(position_offsets) != batch_size:
            raise ShapeMismatch(
                f"{len(position_offsets)} position offsets for batch of {batch_size}"
            )
        if input_ids.numel() and (
            int(input_ids.min()) < 0 or int(input_ids.max()) >= self.config.vocab_size
        ):
            raise ShapeMismatch(
                f"token ids must be in [0, {self.config.vocab_size}), got "
                f"[{int(input_ids.min())}, {int(input_ids.max())}]"
            )

        mask = None if seq_len == 1 else self.mask_cache.mask_for(seq_len, input_ids.device)
        freqs_cos, freqs_sin = self.rotary.lookup(position_offsets, seq_len)
        global_weight = self.global_scaling_weight()

        h = self.tok_embeddings(input_ids)
        slots = self.kv_cache.arena(arena)
        for i, layer in enumerate(self.layers):
            h, slots[i] = layer(
                h, freqs_cos, freqs_sin, mask, slots[i], scalings, global_weight
            )
        return self.norm(h)

    def _check_scalings(self, scalings: torch.Tensor, batch_size: int, seq_len: int) -> None:
        if tuple(scalings.shape[:2]) != (batch_size, seq_len):
            raise ShapeMismatch(
                f"classifier returned scalings {tuple(scalings.shape)} for "
                f"input ({batch_size}, {seq_len})"
            )
        if self.adapters is not None and scalings.shape[-1] != self.adapters.n_adapters:
            raise ShapeMismatch(
                f"classifier returned {scalings.shape[-1]} scalings per token, "
                f"model has {self.adapters.n_adapters} adapters"
            )

    def _forward(
        self,
        input_ids: torch.Tensor,
        input_ids_full: torch.Tensor,
        position_offsets: Offsets,
        position_offsets_full: Offsets,
        no_cache: bool,
    ) -> torch.Tensor:
        primary = CacheArena.PRIMARY

        if self.classifier is None:
            if no_cache:
                self.kv_cache.reset(primary)
                hidden = self.inner_forward(input_ids_full, position_offsets_full, None, primary)
                self.kv_cache.reset(primary)
            else:
                hidden = self.inner_forward(input_ids, position_offsets, None, primary)
            return self.output(hidden[:, -1, :])

        # ── Scaling pass: full context, placeholder scalings ───────────────
        batch_size, full_len = input_ids_full.shape
        dummy = self.classifier.dummy_scalings(
            batch_size, full_len, input_ids_full.device, self.dtype
        )
        self.kv_cache.reset(CacheArena.SCALING)
        hidden = self.inner_forward(
            input_ids_full, position_offsets_full, dummy, CacheArena.SCALING
        )

        # ── Classifier ─────────────────────────────────────────────────────
        scalings = self.classifier(hidden)
        self._check_scalings(scalings, batch_size, full_len)

        # ── Final pass: real scalings ──────────────────────────────────────
        if no_cache:
            self.kv_cache.reset(primary)
            hidden = self.inner_forward(
                input_ids_full, position_offsets_full, scalings, primary
            )
            self.kv_cache.reset(primary)
        else:
            seq_len = input_ids.shape[1]
            hidden = self.inner_forward(
                input_ids, position_offsets, scalings[:, full_len - seq_len:], primary
            )

        logger.debug(
            "step: full=%d new=%d primary_cache=%d scaling_cache=%d",
            full_len, input_ids.shape[1],
            self.kv_cache.seq_len(primary), self.kv_cache.seq_len(CacheArena.SCALING),
        )
        return self.output(hidden[:, -1, :])

    @torch.no_grad()
    def forward(
        self,
        input_ids: torch.Tensor,
        input_ids_full: Optional[torch.Tensor] = None,
        position_offsets: Optional[Offsets] = None,
        position_offsets_full: Optional[Offsets] = None,
        no_cache: bool = False,
    ) -> torch.Tensor:
        """
        One generation step. Runs without autograd: cached keys and values
        never hold a graph.

        Args:
            input_ids: (batch, seq_len) new tokens for the incremental final pass.
            input_ids_full: (batch, full_len) whole context for the scaling pass
                (and for the final pass when no_cache). Defaults to input_ids.
            position_offsets: Start position of input_ids per row. Defaults to 0.
            position_offsets_full: Start position of input_ids_full per row.
                Defaults to 0.
            no_cache: Rebuild the full context from an empty primary arena and
                leave the arena empty afterwards.

        Returns:
            Logits at the last position, (batch, vocab_size).
        """
        batch_size = input_ids.shape[0]
        if position_offsets is None:
            position_offsets = [0] * batch_size
        if input_ids_full is None:
            input_ids_full = input_ids
            if position_offsets_full is None:
                position_offsets_full = position_offsets
        if position_offsets_full is None:
            position_offsets_full = [0] * batch_size
        if input_ids_full.shape[0] != batch_size or input_ids.shape[1] > input_ids_full.shape[1]:
            raise ShapeMismatch(
                f"new tokens {tuple(input_ids.shape)} do not fit inside the full "
                f"context {tuple(input_ids_full.shape)}"
            )

        try:
            return self._forward(
                input_ids, input_ids_full, position_offsets, position_offsets_full, no_cache
            )
        except XLoraError:
            raise
        except RuntimeError as e:
            raise NumericBackendFailure(str(e)) from e
