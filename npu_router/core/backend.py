"""
npu-router :: Inference Backend

The tensor-inference engine is opaque to the router: one exclusive handle
per model exposing a single forward pass.

  forward(input_ids (1, seq), attention_mask (1, seq)) → logits (1, seq, vocab)

Only the logits of the last position are consumed. The stock backend runs a
TorchScript module exported ahead of time (`torch.jit.save`).

INL - 2025
"""

import os
from typing import Callable, Optional

import torch

from npu_router.core.exceptions import ConfigurationError
from npu_router.core.logging import get_logger

logger = get_logger("npu_router.backend")


class InferenceBackend:
    """Exclusive handle to one loaded model."""

    def __init__(self, device: str = "cpu"):
        self.device = torch.device(device)
        self.closed = False

    def forward(self, input_ids: torch.Tensor, attention_mask: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def close(self):
        """Release the handle. Idempotent."""
        self.closed = True


class TorchScriptBackend(InferenceBackend):
    """
    Backend over a serialized TorchScript module.

    The module is called as module(input_ids, attention_mask); a tuple result
    is unwrapped to its first element (HF-style (logits, ...) outputs).
    """

    def __init__(self, path: str, device: str = "cpu"):
        super().__init__(device)
        self.path = path
        self.module = torch.jit.load(path, map_location=self.device)
        self.module.eval()

    def forward(self, input_ids: torch.Tensor, attention_mask: torch.Tensor) -> torch.Tensor:
        output = self.module(input_ids.to(self.device), attention_mask.to(self.device))
        if isinstance(output, (tuple, list)):
            output = output[0]
        return output

    def close(self):
        self.module = None
        super().close()


class CallableBackend(InferenceBackend):
    """Backend around a plain callable (in-process models, tests)."""

    def __init__(self, fn: Callable[[torch.Tensor, torch.Tensor], torch.Tensor], device: str = "cpu"):
        super().__init__(device)
        self.fn = fn

    def forward(self, input_ids: torch.Tensor, attention_mask: torch.Tensor) -> torch.Tensor:
        return self.fn(input_ids, attention_mask)

    def close(self):
        self.fn = None
        super().close()


def load_backend(path: str, device: Optional[str] = None) -> InferenceBackend:
    """
    Open the backend for a weights file.

    Raises ConfigurationError when the path is missing or not loadable.
    """
    device = device or "cpu"
    if not path or not os.path.isfile(path):
        raise ConfigurationError(f"Model weights not found: {path!r}")

    try:
        backend = TorchScriptBackend(path, device=device)
    except (RuntimeError, ValueError) as e:
        raise ConfigurationError(f"Cannot load {path}: {e}") from e

    logger.debug(f"Backend loaded: {path} on {device}")
    return backend
