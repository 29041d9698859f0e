"""
npu-router :: Errors

Error taxonomy:
  - Configuration: bad model path / tokenizer / config values
  - Inference:     backend forward pass failed
  - Cancellation:  caller cancelled or the deadline passed
  - Dispatch:      model unavailable or busy

INL - 2025
"""

from typing import Dict, Optional


class RouterError(Exception):
    """Base class for all router errors."""
    pass


class ConfigurationError(RouterError):
    """Missing or invalid model configuration."""
    pass


class ModelLoadError(ConfigurationError):
    """Eager load failed for one or more models."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        detail = "; ".join(f"{name}: {msg}" for name, msg in sorted(self.errors.items()))
        super().__init__(f"Failed to load {len(self.errors)} model(s): {detail}")


class InferenceError(RouterError):
    """Backend forward pass failed."""
    pass


class GenerationCancelled(RouterError):
    """Generation aborted by cancellation or timeout."""

    def __init__(self, reason: str = "cancelled", model: Optional[str] = None):
        self.reason = reason
        self.model = model
        where = f" ({model})" if model else ""
        super().__init__(f"Generation {reason}{where}")


class DispatchError(RouterError):
    """Request could not be dispatched to a model."""

    def __init__(self, model: str, message: str):
        self.model = model
        super().__init__(message)


class ModelUnavailableError(DispatchError):
    """Session is not loaded (lazy load failed or model is being evicted)."""

    def __init__(self, model: str, detail: str = ""):
        message = f"Model '{model}' is not available"
        if detail:
            message += f": {detail}"
        super().__init__(model, message)


class ModelBusyError(DispatchError):
    """Session stayed busy longer than the configured wait."""

    def __init__(self, model: str, waited_s: float):
        self.waited_s = waited_s
        super().__init__(model, f"Model '{model}' busy for more than {waited_s:.1f}s")


class ActionParseError(ValueError):
    """Generated text carries no usable action descriptor."""
    pass
