"""
Unit tests for the generation loop.

Tests verify:
  1. Greedy decoding (temperature=0) is deterministic and matches step-by-step argmax
  2. Top-k restricts to exactly k candidates
  3. Top-p (nucleus) sampling works correctly
  4. max_new_tokens and eos_id end generation
  5. Cache arenas are left consistent after success and reset after failure
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xlora_llama.cache import CacheArena
from xlora_llama.config import ClassifierConfig, ModelConfig
from xlora_llama.errors import NumericBackendFailure
from xlora_llama.generate import _sample_token, generate, generate_batch, sample_top_p
from xlora_llama.model import XLoraLlama
from xlora_llama.weights import synthetic_adapters, synthetic_weights


@pytest.fixture
def tiny_config():
    return ModelConfig(
        vocab_size=256,
        dim=64,
        n_layers=2,
        n_heads=4,
        n_kv_heads=2,
        hidden_dim=128,
        max_seq_len=32,
    )


@pytest.fixture
def tiny_model(tiny_config):
    """Create a tiny classifier-driven model for testing."""
    torch.manual_seed(0)
    model = XLoraLlama(
        tiny_config,
        synthetic_weights(tiny_config, std=0.1),
        adapters=synthetic_adapters(tiny_config, std=0.1),
        classifier_config=ClassifierConfig(n_adapters=2, hidden_size=tiny_config.dim, xlora_size=16),
    )
    model.eval()
    return model


class FailingClassifier:
    """Raises a backend error on the n-th call."""

    def __init__(self, n_adapters, fail_on):
        self.n_adapters = n_adapters
        self.fail_on = fail_on
        self.calls = 0

    def __call__(self, hidden_states):
        self.calls += 1
        if self.calls == self.fail_on:
            raise RuntimeError("kernel launch failed")
        return torch.zeros(*hidden_states.shape[:2], self.n_adapters, dtype=hidden_states.dtype)

    def dummy_scalings(self, batch_size, seq_len, device=None, dtype=torch.float32):
        return torch.zeros(batch_size, seq_len, self.n_adapters, device=device, dtype=dtype)

    def global_scaling_weight(self):
        return 1.0


class TestSampling:
    """Tests for token sampling functions."""

    def test_greedy_deterministic(self):
        """Temperature=0 should always return the argmax token."""
        logits = torch.tensor([[1.0, 5.0, 3.0, 2.0]])
        token1 = _sample_token(logits, temperature=0.0, top_k=0, top_p=1.0)
        token2 = _sample_token(logits, temperature=0.0, top_k=0, top_p=1.0)
        assert token1.item() == 1  # Index of max value (5.0)
        assert token2.item() == 1

    def test_temperature_sharpening(self):
        """Low temperature should make distribution sharper."""
        logits = torch.tensor([[1.0, 2.0, 3.0, 4.0]])

        # Run many samples with low temperature
        samples_low = []
        for _ in range(100):
            t = _sample_token(logits.clone(), temperature=0.01, top_k=0, top_p=1.0)
            samples_low.append(t.item())

        # Most samples should be the argmax (index 3)
        assert samples_low.count(3) > 90, "Low temperature should heavily favor argmax"

    def test_top_k_restricts_vocab(self):
        """Top-k should only allow the top k tokens."""
        logits = torch.tensor([[10.0, 5.0, 3.0, 1.0, 0.5, 0.1]])

        # With top_k=2, only indices 0 and 1 should be sampled
        samples = set()
        for _ in range(100):
            t = _sample_token(logits.clone(), temperature=1.0, top_k=2, top_p=1.0)
            samples.add(t.item())

        assert samples.issubset({0, 1}), f"Top-k=2 sampled tokens outside top 2: {samples}"

    def test_top_p_basic(self):
        """Top-p should restrict to minimum set exceeding threshold."""
        # Create a distribution where first 2 tokens have ~90% probability
        probs = torch.tensor([0.5, 0.4, 0.05, 0.03, 0.02])

        samples = set()
        for _ in range(100):
            token = sample_top_p(probs.clone(), p=0.85)
            samples.add(token.item())

        # With p=0.85, only tokens 0 and 1 should be sampled (cumsum = 0.9)
        assert samples.issubset({0, 1}), f"Top-p=0.85 sampled: {samples}"

    def test_top_p_includes_crossing_token(self):
        """The token that makes cumsum cross p should be included."""
        probs = torch.tensor([0.3, 0.3, 0.2, 0.1, 0.1])
        # p=0.55: cumsum after 2 tokens = 0.6 > 0.55
        # So tokens 0 and 1 should be included

        samples = set()
        for _ in range(200):
            token = sample_top_p(probs.clone(), p=0.55)
            samples.add(token.item())

        assert 0 in samples and 1 in samples

    def test_top_p_one_disables(self):
        """top_p=1.0 should include all tokens."""
        probs = torch.tensor([0.25, 0.25, 0.25, 0.25])

        samples = set()
        for _ in range(200):
            token = sample_top_p(probs.clone(), p=1.0)
            samples.add(token.item())

        # All 4 tokens should appear
        assert len(samples) == 4



class TestGenerate:
    """Tests for the generation loop over the dual-pass model."""

    def test_greedy_deterministic(self, tiny_model):
        first = generate(tiny_model, [1, 2, 3], max_new_tokens=6, temperature=0.0)
        second = generate(tiny_model, [1, 2, 3], max_new_tokens=6, temperature=0.0)
        assert first.tokens == second.tokens

    def test_greedy_matches_stepwise_argmax(self, tiny_model):
        """generate feeds new tokens at cur_pos and the full context at 0."""
        result = generate(tiny_model, [1, 2, 3], max_new_tokens=4, temperature=0.0)

        context = [1, 2, 3]
        tiny_model.reset_cache()
        expected = []
        with torch.no_grad():
            logits = tiny_model(torch.tensor([context]))
            for _ in range(4):
                token = int(logits.argmax(-1).item())
                expected.append(token)
                context.append(token)
                logits = tiny_model(
                    torch.tensor([[token]]),
                    input_ids_full=torch.tensor([context]),
                    position_offsets=[len(context) - 1],
                    position_offsets_full=[0],
                )
        assert result.tokens == expected

    def test_max_new_tokens(self, tiny_model):
        result = generate(tiny_model, [5, 6], max_new_tokens=5, temperature=1.0, top_k=10)
        assert result.prompt_tokens == 2
        assert result.generated_tokens == 5
        assert len(result.tokens) == 5
        assert all(0 <= t < 256 for t in result.tokens)
        assert not result.stopped_on_eos

    def test_stops_on_eos(self, tiny_model):
        first = generate(tiny_model, [1, 2, 3], max_new_tokens=1, temperature=0.0).tokens[0]
        result = generate(tiny_model, [1, 2, 3], max_new_tokens=8, temperature=0.0, eos_id=first)
        assert result.tokens == [first]
        assert result.stopped_on_eos

    def test_cache_length_after_generation(self, tiny_model):
        """The last sampled token is never fed back, so it is not cached."""
        result = generate(tiny_model, [1, 2, 3], max_new_tokens=4, temperature=0.0)
        expected = result.prompt_tokens + result.generated_tokens - 1
        assert tiny_model.kv_cache.seq_len(CacheArena.PRIMARY) == expected
        assert tiny_model.kv_cache.seq_len(CacheArena.SCALING) == expected

    def test_no_cache_matches_cached(self, tiny_model):
        cached = generate(tiny_model, [1, 2, 3], max_new_tokens=4, temperature=0.0)
        uncached = generate(tiny_model, [1, 2, 3], max_new_tokens=4, temperature=0.0, no_cache=True)
        assert cached.tokens == uncached.tokens
        assert tiny_model.kv_cache.seq_len(CacheArena.PRIMARY) == 0

    def test_failure_resets_both_arenas(self, tiny_config):
        model = XLoraLlama(
            tiny_config,
            synthetic_weights(tiny_config),
            adapters=synthetic_adapters(tiny_config),
            classifier=FailingClassifier(2, fail_on=3),
        )
        with pytest.raises(NumericBackendFailure):
            generate(model, [1, 2, 3], max_new_tokens=6, temperature=0.0)
        assert model.kv_cache.seq_len(CacheArena.PRIMARY) == 0
        assert model.kv_cache.seq_len(CacheArena.SCALING) == 0

    def test_empty_prompt(self, tiny_model):
        with pytest.raises(ValueError):
            generate(tiny_model, [], max_new_tokens=2)

    def test_metrics(self, tiny_model):
        result = generate(tiny_model, [1, 2], max_new_tokens=3, temperature=0.0)
        assert result.total_ms >= result.prefill_ms >= 0.0
        assert result.ttft_ms == result.prefill_ms
        assert result.peak_memory_mb == 0.0
        assert "Output tokens  : 3" in result.stats_string()

    def test_generate_batch(self, tiny_model):
        results = generate_batch(tiny_model, [[1, 2], [3, 4, 5]], max_new_tokens=2, temperature=0.0)
        assert [r.prompt_tokens for r in results] == [2, 3]
        assert all(r.generated_tokens == 2 for r in results)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
