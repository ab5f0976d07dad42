"""
xlora-llama: quantized LLaMA inference with classifier-mixed LoRA adapters.

Key modules:
  - config:     Model, classifier and adapter configuration
  - errors:     Error taxonomy (ShapeMismatch, MissingWeight, ...)
  - quant:      Quantized tensor storage (F32/F16/BF16/Q8_0/Q4_0) and matmul
  - weights:    Weight provider interface, GGML/GGUF naming, synthetic weights
  - lora:       Low-rank adapters, adapter store, adapted quantized linear
  - cache:      KV cache arenas and causal mask memo
  - model:      RMSNorm, RoPE, SwiGLU/MoE, GQA attention, dual-pass model
  - classifier: Adapter-scaling classifier
  - generate:   Generation loop and sampling
  - device:     Hardware abstraction (CUDA/MPS/CPU)
  - utils:      Seeding, timing, logging setup, diagnostics
"""

__version__ = "0.1.0"
