"""
Unit tests for the causal mask memo and the KV cache arenas.

Tests verify:
  1. mask_for(t)[i][j] is masked iff j > i, for many t
  2. Repeated mask_for calls return the same tensor object
  3. The two cache arenas are independent
  4. reset clears one arena or both
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xlora_llama.cache import CacheArena, CausalMaskCache, KVCache


def kv(length, batch=1, heads=2, head_dim=4):
    return (
        torch.randn(batch, heads, length, head_dim),
        torch.randn(batch, heads, length, head_dim),
    )


class TestCausalMaskCache:
    """Tests for the memoized causal masks."""

    @pytest.mark.parametrize("seq_len", [1, 2, 3, 7, 16])
    def test_strict_upper_triangle(self, seq_len):
        mask = CausalMaskCache().mask_for(seq_len)
        assert mask.shape == (seq_len, seq_len)
        assert mask.dtype == torch.bool
        for i in range(seq_len):
            for j in range(seq_len):
                assert bool(mask[i, j]) == (j > i)

    def test_memoized_identity(self):
        cache = CausalMaskCache()
        first = cache.mask_for(5)
        assert cache.mask_for(5) is first
        assert len(cache) == 1

    def test_one_entry_per_length(self):
        cache = CausalMaskCache()
        for t in (2, 3, 2, 4, 3):
            cache.mask_for(t)
        assert len(cache) == 3
        assert 4 in cache and 5 not in cache


class TestKVCache:
    """Tests for the two cache arenas."""

    def test_starts_empty(self):
        cache = KVCache(n_layers=3)
        for arena in CacheArena:
            assert cache.arena(arena) == [None, None, None]
            assert cache.seq_len(arena) == 0

    def test_arenas_are_independent(self):
        """Writing one arena never changes the length the other reports."""
        cache = KVCache(n_layers=2)
        cache.arena(CacheArena.SCALING)[0] = kv(5)
        assert cache.seq_len(CacheArena.SCALING) == 5
        assert cache.seq_len(CacheArena.PRIMARY) == 0

        cache.arena(CacheArena.PRIMARY)[0] = kv(2)
        assert cache.seq_len(CacheArena.SCALING) == 5
        assert cache.seq_len(CacheArena.PRIMARY) == 2
        assert cache.arena(CacheArena.PRIMARY) is not cache.arena(CacheArena.SCALING)

    def test_reset_one_arena(self):
        cache = KVCache(n_layers=2)
        cache.arena(CacheArena.PRIMARY)[1] = kv(3)
        cache.arena(CacheArena.SCALING)[1] = kv(4)
        cache.reset(CacheArena.PRIMARY)
        assert cache.seq_len(CacheArena.PRIMARY, layer=1) == 0
        assert cache.seq_len(CacheArena.SCALING, layer=1) == 4

    def test_reset_both(self):
        cache = KVCache(n_layers=1)
        cache.arena(CacheArena.PRIMARY)[0] = kv(3)
        cache.arena(CacheArena.SCALING)[0] = kv(3)
        cache.reset()
        assert cache.seq_len(CacheArena.PRIMARY) == 0
        assert cache.seq_len(CacheArena.SCALING) == 0

    def test_arena_accepts_string(self):
        cache = KVCache(n_layers=1)
        assert cache.arena("primary") is cache.arena(CacheArena.PRIMARY)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
