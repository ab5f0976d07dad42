"""
Error taxonomy for the inference core.

Every error raised by this package derives from XLoraError, and each class
also derives from the closest builtin so callers that already catch
ValueError / KeyError / RuntimeError keep working.

None of these are recoverable inside a forward pass. A failure mid-pass can
leave the KV cache arenas partially updated, so callers should drop or reset
the cache before issuing another step (see generate.generate).
"""


class XLoraError(Exception):
    """Base class for all inference-core errors."""


class ShapeMismatch(XLoraError, ValueError):
    """A tensor dimension contract was violated."""


class MissingWeight(XLoraError, KeyError):
    """A named tensor (or metadata key) is absent from the weight provider."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"cannot find '{self.name}' in weight provider"


class UnsupportedConfiguration(XLoraError, ValueError):
    """Hyperparameters or runtime requests the core cannot honour."""


class NumericBackendFailure(XLoraError, RuntimeError):
    """The underlying tensor kernel reported an error (device/backend fault)."""
