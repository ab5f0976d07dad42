"""
Unit tests for mixture-of-experts routing.

Tests verify:
  1. Renormalized routing weights sum to 1 and at most k experts are used
  2. Ties go to the lower expert index
  3. Output is the convex combination of the selected experts' outputs
  4. Experts with no routed tokens are never run and contribute nothing
"""

import sys
import os

import torch
import torch.nn.functional as F
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xlora_llama.errors import UnsupportedConfiguration
from xlora_llama.lora import AdaptedQuantizedLinear
from xlora_llama.model import FeedForward, MoEFeedForward, route_tokens
from xlora_llama.quant import QuantizedMatmul, QuantizedTensor


DIM, HIDDEN = 32, 64


def linear(weight):
    return AdaptedQuantizedLinear(QuantizedMatmul(QuantizedTensor.from_float(weight)))


def make_expert(seed, fill=None):
    gen = torch.Generator().manual_seed(seed)
    shapes = [(HIDDEN, DIM), (HIDDEN, DIM), (DIM, HIDDEN)]
    weights = [torch.randn(*s, generator=gen) * 0.1 for s in shapes]
    if fill is not None:
        weights = [torch.full_like(w, fill) for w in weights]
    return FeedForward(*(linear(w) for w in weights))


def make_gate(rows):
    """Gate whose expert e scores x by rows[e] * sum(x)."""
    weight = torch.stack([torch.full((DIM,), r) for r in rows])
    return QuantizedMatmul(QuantizedTensor.from_float(weight))


class TestRouteTokens:
    """Tests for top-k selection and renormalization."""

    def test_weights_sum_to_one(self):
        torch.manual_seed(0)
        probs = F.softmax(torch.randn(50, 8), dim=-1)
        experts, weights = route_tokens(probs, k=3)
        assert experts.shape == (50, 3)
        assert torch.allclose(weights.sum(-1), torch.ones(50), atol=1e-6)

    def test_at_most_k_distinct_experts(self):
        torch.manual_seed(1)
        probs = F.softmax(torch.randn(20, 6), dim=-1)
        experts, _ = route_tokens(probs, k=2)
        for row in experts:
            assert len(set(row.tolist())) == 2

    def test_descending_order(self):
        probs = torch.tensor([[0.1, 0.6, 0.3]])
        experts, weights = route_tokens(probs, k=2)
        assert experts.tolist() == [[1, 2]]
        assert torch.allclose(weights, torch.tensor([[0.6 / 0.9, 0.3 / 0.9]]))

    def test_ties_prefer_lower_index(self):
        experts, _ = route_tokens(torch.tensor([[0.25, 0.25, 0.25, 0.25]]), k=2)
        assert experts.tolist() == [[0, 1]]
        experts, _ = route_tokens(torch.tensor([[0.1, 0.3, 0.3, 0.3]]), k=2)
        assert experts.tolist() == [[1, 2]]


class TestMoEFeedForward:
    """Tests for the routed feed-forward block."""

    def test_output_shape(self):
        experts = [make_expert(s) for s in range(4)]
        moe = MoEFeedForward(make_gate([1.0, 0.5, -1.0, 0.0]), experts, n_expert_used=2)
        x = torch.randn(2, 5, DIM)
        assert moe(x).shape == (2, 5, DIM)

    def test_convex_combination_of_selected_experts(self):
        """Positive inputs always route to experts 0 and 1 with fixed weights."""
        experts = [make_expert(s) for s in range(4)]
        gate = make_gate([1.0, 0.5, -1.0, 0.0])
        moe = MoEFeedForward(gate, experts, n_expert_used=2)

        x = torch.rand(1, 4, DIM) + 0.1
        tokens = x.reshape(-1, DIM)
        probs = F.softmax(gate(tokens), dim=-1)
        w0 = probs[:, 0] / (probs[:, 0] + probs[:, 1])
        w1 = 1.0 - w0
        expected = (
            experts[0](tokens) * w0.unsqueeze(-1) + experts[1](tokens) * w1.unsqueeze(-1)
        )
        assert torch.allclose(moe(x).reshape(-1, DIM), expected, atol=1e-5)

    def test_unrouted_experts_are_not_run(self):
        """An expert with no tokens contributes nothing, even with NaN weights."""
        experts = [make_expert(0), make_expert(1), make_expert(2, fill=float("nan")), make_expert(3)]
        moe = MoEFeedForward(make_gate([1.0, 0.5, -1.0, -2.0]), experts, n_expert_used=2)
        x = torch.rand(2, 3, DIM) + 0.1
        assert torch.isfinite(moe(x)).all()

    def test_scalings_follow_tokens(self):
        """Per-token scalings reach the experts alongside their tokens."""
        experts = [make_expert(s) for s in range(2)]
        moe = MoEFeedForward(make_gate([1.0, 0.0]), experts, n_expert_used=1)
        x = torch.rand(1, 3, DIM)
        out = moe(x, torch.zeros(1, 3, 2), 1.0)
        assert torch.equal(out, moe(x))

    def test_k_out_of_range(self):
        with pytest.raises(UnsupportedConfiguration):
            MoEFeedForward(make_gate([1.0, 0.0]), [make_expert(0), make_expert(1)], 3)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
