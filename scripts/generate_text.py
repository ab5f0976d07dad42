"""
Token generation CLI for the adapter-scaling model.

USAGE:
    # Synthetic weights + adapters (smoke run, no files needed)
    python scripts/generate_text.py --random-init --prompt-ids 1,2,3

    # Save the synthetic set for later runs
    python scripts/generate_text.py --random-init --save-synthetic runs/tiny

    # Weight store + adapter store + classifier config
    python scripts/generate_text.py --weights runs/tiny/weights.pt \
        --adapters runs/tiny/adapters.pt \
        --classifier-config runs/tiny/classifier.json --prompt-ids 5,9

    # Interactive mode (type comma-separated ids)
    python scripts/generate_text.py --weights runs/tiny/weights.pt

WHAT THIS SCRIPT DOES:
    1. Loads (or synthesizes) the quantized weights and the adapter store
    2. Builds the model, with a classifier when a classifier config is given
    3. Generates from token ids and prints ids plus timing information
"""

import argparse
import json
import os
import sys

import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xlora_llama.config import ClassifierConfig, ModelConfig
from xlora_llama.device import device_info, get_device
from xlora_llama.generate import generate
from xlora_llama.lora import AdapterStore
from xlora_llama.model import XLoraLlama
from xlora_llama.utils import Timer, print_model_summary, set_seed, setup_logging
from xlora_llama.weights import (
    TensorWeightStore,
    WeightNaming,
    synthetic_adapters,
    synthetic_weights,
)


def tiny_config() -> ModelConfig:
    """Default architecture for --random-init runs."""
    return ModelConfig(
        vocab_size=256, dim=64, n_layers=2, n_heads=4, n_kv_heads=2,
        hidden_dim=128, max_seq_len=512,
    )


def parse_ids(text: str) -> list:
    return [int(tok) for tok in text.replace(" ", "").split(",") if tok]


def load_classifier_config(path: str) -> ClassifierConfig:
    with open(path, "r") as f:
        return ClassifierConfig.from_dict(json.load(f))


def build_model(args: argparse.Namespace, device: torch.device) -> XLoraLlama:
    """Load or synthesize weights/adapters and construct the model."""
    config = ModelConfig.load(args.config) if args.config else None
    classifier_config = (
        load_classifier_config(args.classifier_config) if args.classifier_config else None
    )

    if args.random_init:
        config = config or tiny_config()
        print(f"Synthesizing {args.qtype} weights and {args.n_adapters} adapter(s)")
        weights = synthetic_weights(config, qtype=args.qtype, seed=args.seed)
        adapters = synthetic_adapters(config, n_adapters=args.n_adapters, seed=args.seed)
        if classifier_config is None:
            classifier_config = ClassifierConfig(
                n_adapters=args.n_adapters, hidden_size=config.dim, xlora_size=64
            )
        if args.save_synthetic:
            os.makedirs(args.save_synthetic, exist_ok=True)
            weights.save(os.path.join(args.save_synthetic, "weights.pt"))
            adapters.save(os.path.join(args.save_synthetic, "adapters.pt"))
            config.save(os.path.join(args.save_synthetic, "config.json"))
            with open(os.path.join(args.save_synthetic, "classifier.json"), "w") as f:
                json.dump(classifier_config.to_dict(), f, indent=2)
            print(f"Saved synthetic set to {args.save_synthetic}")
    else:
        if not args.weights:
            raise SystemExit("either --weights or --random-init is required")
        print(f"Loading weights: {args.weights}")
        weights = TensorWeightStore.load(args.weights, consume=True)
        adapters = AdapterStore.load(args.adapters) if args.adapters else None
        if config is None:
            if weights.naming == WeightNaming.GGUF:
                config = ModelConfig.from_gguf_metadata(weights.metadata)
            else:
                config = ModelConfig.from_ggml_hparams(
                    weights.metadata, gqa=args.gqa, hidden_dim=args.hidden_dim
                )

    config.dtype = args.dtype
    print(f"Model config: {config.dim}d, {config.n_layers}L, "
          f"{config.n_heads}H, {config.n_kv_heads}KV"
          + (f", {config.n_expert_used}/{config.n_expert} experts" if config.is_moe else ""))

    with Timer("Model load", device) as t:
        model = XLoraLlama(
            config,
            weights,
            adapters=adapters,
            classifier_config=classifier_config,
            device=device,
        )
    model.eval()
    print(t)
    print(f"Activation dtype: {model.dtype}")
    return model


def run_prompt(model: XLoraLlama, prompt_ids: list, args: argparse.Namespace) -> None:
    result = generate(
        model,
        prompt_ids,
        max_new_tokens=args.max_new_tokens,
        temperature=args.temperature,
        top_k=args.top_k,
        top_p=args.top_p,
        eos_id=args.eos_id,
        no_cache=args.no_cache,
    )
    print(f"\n{','.join(str(t) for t in result.tokens)}")
    print(f"\n{result.stats_string()}\n")


def interactive_loop(model: XLoraLlama, args: argparse.Namespace) -> None:
    print("\n" + "=" * 60)
    print("Interactive Token Generation")
    print("=" * 60)
    print("Type comma-separated token ids and press Enter. Type 'quit' to exit.")
    print("=" * 60 + "\n")

    while True:
        try:
            line = input(">>> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not line:
            continue
        if line.lower() == "quit":
            print("Goodbye!")
            break
        try:
            prompt_ids = parse_ids(line)
        except ValueError:
            print("  expected comma-separated integers")
            continue
        run_prompt(model, prompt_ids, args)


def main():
    parser = argparse.ArgumentParser(
        description="Generate tokens with a quantized adapter-scaling LLaMA",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # ── Model sources ──────────────────────────────────────────────────────
    parser.add_argument("--weights", type=str, default=None,
                        help="Weight store file (.pt) written by TensorWeightStore.save")
    parser.add_argument("--adapters", type=str, default=None,
                        help="Adapter store file (.pt) written by AdapterStore.save")
    parser.add_argument("--config", type=str, default=None,
                        help="ModelConfig JSON (defaults to the weight store metadata)")
    parser.add_argument("--classifier-config", type=str, default=None,
                        help="ClassifierConfig JSON; without it the model runs a single pass")
    parser.add_argument("--gqa", type=int, default=1,
                        help="Grouped-query group size for GGML weight stores")
    parser.add_argument("--hidden-dim", type=int, default=None,
                        help="Feed-forward width for GGML weight stores")

    # ── Synthetic weights ──────────────────────────────────────────────────
    parser.add_argument("--random-init", action="store_true",
                        help="Use synthetic weights and adapters")
    parser.add_argument("--qtype", type=str, default="Q8_0",
                        choices=["F32", "F16", "BF16", "Q8_0", "Q4_0"],
                        help="Storage format for synthetic weights")
    parser.add_argument("--n-adapters", type=int, default=2,
                        help="Number of synthetic adapters")
    parser.add_argument("--save-synthetic", type=str, default=None,
                        help="Directory to save the synthetic weights/adapters/configs to")

    # ── Generation ─────────────────────────────────────────────────────────
    parser.add_argument("--prompt-ids", type=str, default=None,
                        help="Comma-separated prompt token ids (interactive mode if omitted)")
    parser.add_argument("--max-new-tokens", type=int, default=32,
                        help="Maximum number of tokens to generate")
    parser.add_argument("--temperature", type=float, default=0.8,
                        help="Sampling temperature (0=greedy, 1=default, >1=more random)")
    parser.add_argument("--top-k", type=int, default=40,
                        help="Top-k sampling (0=disabled)")
    parser.add_argument("--top-p", type=float, default=0.9,
                        help="Top-p (nucleus) sampling threshold")
    parser.add_argument("--eos-id", type=int, default=None,
                        help="Stop when this token id is sampled")
    parser.add_argument("--no-cache", action="store_true",
                        help="Recompute the full context on every step")

    # ── Runtime ────────────────────────────────────────────────────────────
    parser.add_argument("--dtype", type=str, default="auto",
                        help="Activation dtype: auto, float32, float16, bfloat16")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--summary", action="store_true",
                        help="Print a storage summary of the loaded model")
    parser.add_argument("--verbose", action="store_true",
                        help="Debug logging (per-step cache lengths)")
    parser.add_argument("--log-dir", type=str, default=None,
                        help="Also write a debug log file here")

    args = parser.parse_args()

    log_path = setup_logging(verbose=args.verbose, log_dir=args.log_dir)
    if log_path:
        print(f"Logging to: {log_path}")
    set_seed(args.seed)

    device = get_device()
    print(device_info(device))

    model = build_model(args, device)
    if args.summary:
        print_model_summary(model)

    if args.prompt_ids:
        run_prompt(model, parse_ids(args.prompt_ids), args)
    else:
        interactive_loop(model, args)


if __name__ == "__main__":
    main()
