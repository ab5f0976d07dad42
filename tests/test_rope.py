"""
Unit tests for Rotary Positional Embeddings (RoPE).

These tests verify:
  1. Rotation preserves vector magnitude (isometry)
  2. Relative position encoding: dot products depend on distance
  3. The adjacent-pair convention (x[2p], x[2p+1]) is used
  4. Per-batch position offsets and the table-length limit
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xlora_llama.errors import ShapeMismatch, UnsupportedConfiguration
from xlora_llama.model import (
    RotaryEmbedding,
    apply_rotary_embeddings,
    precompute_rope_frequencies,
)


class TestRoPEFrequencies:
    """Tests for frequency precomputation."""

    def test_shape(self):
        cos, sin = precompute_rope_frequencies(64, 512)
        assert cos.shape == (512, 32)
        assert sin.shape == (512, 32)

    def test_position_zero(self):
        """At position 0, all angles are 0, so cos=1, sin=0."""
        cos, sin = precompute_rope_frequencies(64, 512)
        assert torch.allclose(cos[0], torch.ones(32), atol=1e-6)
        assert torch.allclose(sin[0], torch.zeros(32), atol=1e-6)

    def test_frequencies_decrease(self):
        """Higher pair indices rotate more slowly."""
        cos, sin = precompute_rope_frequencies(64, 512, theta=10000.0)
        angles_at_pos1 = torch.atan2(sin[1], cos[1])
        for i in range(len(angles_at_pos1) - 1):
            assert angles_at_pos1[i] >= angles_at_pos1[i + 1] - 1e-6

    def test_different_theta(self):
        cos1, _ = precompute_rope_frequencies(64, 512, theta=10000.0)
        cos2, _ = precompute_rope_frequencies(64, 512, theta=500000.0)
        assert not torch.allclose(cos1, cos2)


class TestRoPEApplication:
    """Tests for applying RoPE to (batch, heads, seq, head_dim) tensors."""

    def test_single_pair_at_position_zero_unchanged(self):
        """cos=1, sin=0 at position 0 leaves a pair untouched."""
        cos, sin = precompute_rope_frequencies(2, 4)
        x = torch.tensor([[[[0.3, -1.7]]]])
        assert torch.equal(apply_rotary_embeddings(x, cos[:1], sin[:1]), x)

    def test_adjacent_pair_convention(self):
        """Pairs are (x0, x1), (x2, x3): not first half against second half."""
        head_dim = 4
        cos = torch.tensor([[0.0, 1.0]])
        sin = torch.tensor([[1.0, 0.0]])
        x = torch.tensor([[[[1.0, 2.0, 3.0, 4.0]]]])

        out = apply_rotary_embeddings(x, cos, sin)
        # Pair 0 rotated by 90 degrees: (1, 2) → (-2, 1). Pair 1 unchanged.
        expected = torch.tensor([[[[-2.0, 1.0, 3.0, 4.0]]]])
        assert out.shape == (1, 1, 1, head_dim)
        assert torch.allclose(out, expected, atol=1e-6)

    def test_magnitude_preservation(self):
        cos, sin = precompute_rope_frequencies(64, 32)
        x = torch.randn(4, 8, 32, 64)
        x_rot = apply_rotary_embeddings(x, cos, sin)
        assert torch.allclose(x.norm(dim=-1), x_rot.norm(dim=-1), atol=1e-4)

    def test_relative_distance_invariance(self):
        """dot(R(q,m), R(k,n)) depends only on m - n."""
        cos, sin = precompute_rope_frequencies(64, 100)
        q = torch.randn(1, 1, 1, 64)
        k = torch.randn(1, 1, 1, 64)

        dots = []
        for base_pos in [0, 10, 20, 50, 80]:
            m, n = base_pos + 5, base_pos
            q_rot = apply_rotary_embeddings(q, cos[m:m + 1], sin[m:m + 1])
            k_rot = apply_rotary_embeddings(k, cos[n:n + 1], sin[n:n + 1])
            dots.append((q_rot * k_rot).sum().item())

        for d in dots:
            assert abs(d - dots[0]) < 1e-3, f"Relative position property violated: {dots}"

    def test_dtype_preservation(self):
        cos, sin = precompute_rope_frequencies(64, 32)
        x = torch.randn(1, 2, 8, 64)
        assert apply_rotary_embeddings(x, cos[:8], sin[:8]).dtype == torch.float32
        assert apply_rotary_embeddings(x.half(), cos[:8], sin[:8]).dtype == torch.float16


class TestRotaryEmbedding:
    """Tests for the per-batch offset lookup."""

    def test_lookup_shape(self):
        rope = RotaryEmbedding(head_dim=16, max_seq_len=32)
        cos, sin = rope.lookup([0, 5], seq_len=3)
        assert cos.shape == (2, 1, 3, 8)
        assert sin.shape == (2, 1, 3, 8)

    def test_lookup_rows_follow_offsets(self):
        rope = RotaryEmbedding(head_dim=16, max_seq_len=32)
        cos, _ = rope.lookup([4], seq_len=2)
        assert torch.equal(cos[0, 0], rope.freqs_cos[4:6])

    def test_heterogeneous_offsets(self):
        """Each batch row is rotated at its own absolute position."""
        rope = RotaryEmbedding(head_dim=16, max_seq_len=32)
        x = torch.randn(2, 3, 1, 16)

        batched = rope(x, [2, 9])
        row0 = rope(x[:1], [2])
        row1 = rope(x[1:], [9])
        assert torch.allclose(batched[0], row0[0], atol=1e-6)
        assert torch.allclose(batched[1], row1[0], atol=1e-6)

    def test_table_limit(self):
        """offset + seq_len beyond the table is rejected."""
        rope = RotaryEmbedding(head_dim=16, max_seq_len=8)
        rope.lookup([6], seq_len=2)
        with pytest.raises(UnsupportedConfiguration):
            rope.lookup([7], seq_len=2)

    def test_offset_count_must_match_batch(self):
        rope = RotaryEmbedding(head_dim=16, max_seq_len=8)
        with pytest.raises(ShapeMismatch):
            rope(torch.randn(2, 1, 1, 16), [0])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
