"""
Token generation loop over the dual-pass model.

Each step calls XLoraLlama.forward with two views of the sequence:
  - input_ids / position_offsets:           only the tokens not yet cached
  - input_ids_full / position_offsets_full: the whole context so far

STEPS:
  PREFILL   step 0 feeds the whole prompt at offset 0.
  DECODE    every later step feeds the single sampled token at offset
            cur_pos, and the full context (prompt + generated) at offset 0
            for the classifier's scaling pass.
  With no_cache the final pass also rebuilds the full context, and the
  primary arena is left empty after each step.

SAMPLING:
  Applied in order: temperature → top-k → top-p → sample.
  temperature = 0 is greedy (argmax).

ERRORS:
  Any exception from a step leaves the cache arenas in an unknown state, so
  both arenas are reset before the exception propagates.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import torch
import torch.nn.functional as F

from xlora_llama.model import XLoraLlama


logger = logging.getLogger(__name__)


@dataclass
class GenerateResult:
    """Generated token ids plus inference metrics."""
    tokens: List[int] = field(default_factory=list)  # generated ids only
    prompt_tokens: int = 0
    generated_tokens: int = 0
    prefill_ms: float = 0.0     # first step (prompt) wall time
    decode_ms: float = 0.0      # remaining steps
    total_ms: float = 0.0
    peak_memory_mb: float = 0.0  # 0 on CPU
    temperature: float = 0.0
    top_k: int = 0
    top_p: float = 1.0
    stopped_on_eos: bool = False

    @property
    def ttft_ms(self) -> float:
        """Time to first token, same as prefill time."""
        return self.prefill_ms

    @property
    def decode_tok_per_sec(self) -> float:
        if self.decode_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.decode_ms / 1000)

    @property
    def overall_tok_per_sec(self) -> float:
        if self.total_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.total_ms / 1000)

    def stats_string(self) -> str:
        """Formatted summary of inference metrics."""
        lines = [
            f"Sampling       : temp={self.temperature}, top_k={self.top_k}, top_p={self.top_p}",
            f"Prompt tokens  : {self.prompt_tokens}",
            f"Output tokens  : {self.generated_tokens}",
            f"TTFT           : {self.ttft_ms:.1f} ms",
            f"Decode speed   : {self.decode_tok_per_sec:.1f} tok/s",
            f"Overall speed  : {self.overall_tok_per_sec:.1f} tok/s",
            f"Total time     : {self.total_ms:.1f} ms",
        ]
        if self.peak_memory_mb > 0:
            lines.append(f"Peak GPU mem   : {self.peak_memory_mb:.1f} MB")
        return "\n".join(lines)


def sample_top_p(probs: torch.Tensor, p: float) -> torch.Tensor:
    """
    Top-p (nucleus) sampling: keep the smallest prefix of tokens (by
    descending probability) whose cumulative probability reaches p.

    EXAMPLE:
      probs = [0.4, 0.3, 0.15, 0.1, 0.05]  (sorted descending)
      cumsum = [0.4, 0.7, 0.85, 0.95, 1.0]
      p = 0.9 → kept = [0.4, 0.3, 0.15, 0.1] → renormalized

    Args:
        probs: Probability distribution of shape (vocab_size,).
        p: Cumulative probability threshold (0.0 to 1.0).

    Returns:
        Sampled token index as a scalar tensor.
    """
    probs_sorted, sorted_indices = torch.sort(probs, descending=True)
    cumsum = torch.cumsum(probs_sorted, dim=-1)
    # Shifted by one so the token that crosses p is kept.
    mask = cumsum - probs_sorted > p
    probs_sorted[mask] = 0.0
    probs_sorted /= probs_sorted.sum()
    sampled_idx = torch.multinomial(probs_sorted, num_samples=1)
    return sorted_indices[sampled_idx].squeeze(0)


def _sample_token(
    logits: torch.Tensor,
    temperature: float,
    top_k: int,
    top_p: float,
) -> torch.Tensor:
    """
    Sample a single token from (1, vocab_size) logits.

    Args:
        logits: Raw prediction scores, shape (1, vocab_size).
        temperature: Sampling temperature (0 = greedy).
        top_k: Number of top tokens to keep (0 = disabled).
        top_p: Cumulative probability threshold (1.0 = disabled).

    Returns:
        Sampled token ID as a scalar tensor.
    """
    logits = logits.squeeze(0).float()

    if temperature == 0.0:
        return logits.argmax()

    logits = logits / temperature

    if top_k > 0:
        top_k = min(top_k, logits.size(-1))
        kth_value = torch.topk(logits, top_k).values[-1]
        logits[logits < kth_value] = float("-inf")

    probs = F.softmax(logits, dim=-1)

    if top_p < 1.0:
        return sample_top_p(probs, top_p)
    return torch.multinomial(probs, num_samples=1).squeeze(0)


@torch.inference_mode()
def generate(
    model: XLoraLlama,
    prompt_ids: Sequence[int],
    max_new_tokens: int = 32,
    temperature: float = 0.8,
    top_k: int = 40,
    top_p: float = 0.9,
    eos_id: Optional[int] = None,
    no_cache: bool = False,
) -> GenerateResult:
    """
    Generate token ids continuing `prompt_ids`.

    Args:
        model: Loaded XLoraLlama.
        prompt_ids: Prompt token ids (at least one).
        max_new_tokens: Maximum tokens to generate.
        temperature: 0.0 = greedy, 1.0 = unscaled, >1.0 = flatter.
        top_k: Number of top tokens to consider (0 = disabled).
        top_p: Nucleus sampling threshold (1.0 = disabled).
        eos_id: Stop after sampling this id (it is kept in the output).
        no_cache: Rebuild the full context on every step.

    Returns:
        GenerateResult with the generated ids and inference metrics.
    """
    if len(prompt_ids) == 0:
        raise ValueError("prompt_ids must contain at least one token")

    model.eval()
    device = model.device
    use_cuda = device.type == "cuda"
    if use_cuda:
        torch.cuda.reset_peak_memory_stats(device)

    # A new session starts from empty arenas.
    model.reset_cache()

    context = list(prompt_ids)
    prompt_len = len(context)
    generated: List[int] = []
    stopped_on_eos = False

    t_start = time.perf_counter()
    t_prefill = t_start
    try:
        cur_pos = 0
        new_ids = context
        for step in range(max_new_tokens):
            full = torch.tensor([context], dtype=torch.long, device=device)
            new = torch.tensor([new_ids], dtype=torch.long, device=device)
            logits = model(
                new,
                input_ids_full=full,
                position_offsets=[cur_pos],
                position_offsets_full=[0],
                no_cache=no_cache,
            )
            cur_pos = len(context)

            next_token = int(_sample_token(logits, temperature, top_k, top_p).item())
            generated.append(next_token)
            context.append(next_token)
            new_ids = [next_token]

            if step == 0:
                if use_cuda:
                    torch.cuda.synchronize(device)
                t_prefill = time.perf_counter()
            if eos_id is not None and next_token == eos_id:
                stopped_on_eos = True
                break
    except Exception:
        model.reset_cache()
        logger.warning("generation failed after %d token(s); cache arenas reset", len(generated))
        raise

    if use_cuda:
        torch.cuda.synchronize(device)
    t_end = time.perf_counter()

    peak_memory_mb = 0.0
    if use_cuda:
        peak_memory_mb = torch.cuda.max_memory_allocated(device) / 1024**2

    return GenerateResult(
        tokens=generated,
        prompt_tokens=prompt_len,
        generated_tokens=len(generated),
        prefill_ms=(t_prefill - t_start) * 1000,
        decode_ms=(t_end - t_prefill) * 1000,
        total_ms=(t_end - t_start) * 1000,
        peak_memory_mb=peak_memory_mb,
        temperature=temperature,
        top_k=top_k,
        top_p=top_p,
        stopped_on_eos=stopped_on_eos,
    )


def generate_batch(
    model: XLoraLlama,
    prompts: Sequence[Sequence[int]],
    **kwargs,
) -> List[GenerateResult]:
    """Generate for several prompts, one session each."""
    return [generate(model, prompt, **kwargs) for prompt in prompts]
