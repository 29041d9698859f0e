"""
npu-router :: Sampling

Next-token selection over a logits vector.
All outputs are integer token IDs.

Pipeline (one step):
  1. copy logits (the backend buffer is never touched)
  2. repetition penalty over ids already emitted this call
  3. greedy argmax when temperature ~ 0 (stops here)
  4. temperature scaling
  5. top-k filtering (tie-inclusive threshold)
  6. top-p (nucleus) filtering
  7. numerically stable softmax
  8. inverse-CDF draw
  9. record the id in the generation state

INL - 2025
"""

import math
import torch
from typing import Optional, List
from dataclasses import dataclass, field, replace


# Below this the distribution is treated as a point mass on the argmax.
GREEDY_TEMPERATURE = 0.01


@dataclass(frozen=True)
class SamplingParams:
    """Decoding parameters, replaced wholesale, never mutated in place."""
    temperature: float = 0.7
    top_k: int = 40                  # 0 = disabled
    top_p: float = 0.95              # >= 1 or <= 0 = disabled
    repetition_penalty: float = 1.1  # 1 = disabled

    @property
    def is_greedy(self) -> bool:
        return self.temperature < GREEDY_TEMPERATURE

    @classmethod
    def from_temperature(cls, temperature: float) -> "SamplingParams":
        """Defaults tuned by task: low temperature narrows the candidate set."""
        if temperature < 0.3:
            return cls(temperature=temperature, top_k=10, top_p=0.5)
        if temperature > 0.8:
            return cls(temperature=temperature, top_k=100, top_p=0.98)
        return cls(temperature=temperature)

    def with_overrides(self, **kwargs) -> "SamplingParams":
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})

    def validate(self) -> Optional[str]:
        """Return an error message or None."""
        if math.isnan(self.temperature) or self.temperature < 0:
            return "temperature must be >= 0"
        if self.top_k < 0:
            return "top_k must be >= 0"
        if math.isnan(self.top_p):
            return "top_p must be a number"
        if self.repetition_penalty < 1.0:
            return "repetition_penalty must be >= 1"
        return None


@dataclass
class GenerationState:
    """Ids emitted during the current generate call (repetition penalty only)."""
    token_ids: List[int] = field(default_factory=list)

    def append(self, token_id: int):
        self.token_ids.append(token_id)

    def reset(self):
        self.token_ids = []

    def __len__(self) -> int:
        return len(self.token_ids)


# =========================================================================
# Individual steps
# =========================================================================

def apply_repetition_penalty(
    logits: torch.Tensor,
    past_tokens: List[int],
    penalty: float,
) -> torch.Tensor:
    """
    Penalize ids already generated: reduce positive, amplify negative.

    Modifies and returns `logits`. Out-of-range ids are ignored.
    """
    if penalty == 1.0 or not past_tokens:
        return logits
    vocab_size = logits.shape[-1]
    ids = sorted({t for t in past_tokens if 0 <= t < vocab_size})
    if not ids:
        return logits
    token_set = torch.tensor(ids, dtype=torch.long, device=logits.device)
    penalty_logits = logits[token_set]
    penalty_logits = torch.where(
        penalty_logits > 0,
        penalty_logits / penalty,
        penalty_logits * penalty,
    )
    logits[token_set] = penalty_logits
    return logits


def apply_top_k(logits: torch.Tensor, top_k: int) -> torch.Tensor:
    """
    Mask every logit strictly below the k-th largest value.

    Ties at the threshold survive, so more than k ids may remain.
    """
    if top_k <= 0 or top_k >= logits.shape[-1]:
        return logits
    top_k_values, _ = logits.topk(top_k)
    threshold = top_k_values[-1]
    logits[logits < threshold] = float("-inf")
    return logits


def apply_top_p(logits: torch.Tensor, top_p: float) -> torch.Tensor:
    """
    Keep the shortest probability-sorted prefix whose mass reaches top_p.

    The id that crosses the threshold is kept. Disabled outside (0, 1).
    """
    if top_p <= 0.0 or top_p >= 1.0:
        return logits
    probs = stable_softmax(logits)
    sorted_probs, sorted_indices = probs.sort(descending=True)
    cumulative = sorted_probs.cumsum(dim=-1)

    # First position where the running mass reaches top_p, inclusive
    cutoff = int(torch.searchsorted(cumulative, torch.tensor([top_p], dtype=cumulative.dtype)).item()) + 1
    cutoff = min(cutoff, logits.shape[-1])

    keep = torch.zeros_like(logits, dtype=torch.bool)
    keep[sorted_indices[:cutoff]] = True
    logits[~keep] = float("-inf")
    return logits


def stable_softmax(logits: torch.Tensor) -> torch.Tensor:
    """
    Softmax that subtracts the finite max and maps -inf to probability 0.

    An all -inf vector yields all zeros instead of NaN.
    """
    finite = torch.isfinite(logits)
    probs = torch.zeros_like(logits, dtype=torch.float32)
    if not bool(finite.any()):
        return probs
    max_val = logits[finite].max()
    probs[finite] = torch.exp(logits[finite].float() - max_val.float())
    total = probs.sum()
    if total > 0:
        probs = probs / total
    return probs


def sample_from_probs(probs: torch.Tensor, generator: Optional[torch.Generator] = None) -> int:
    """
    Inverse-CDF draw: first index whose cumulative mass exceeds u ~ U[0, 1).

    Falls back to the last index with nonzero probability, then to 0.
    """
    u = torch.rand(1, generator=generator).item()
    cumulative = probs.cumsum(dim=-1)
    idx = int(torch.searchsorted(cumulative, torch.tensor([u], dtype=cumulative.dtype), right=True).item())
    if idx < probs.shape[-1] and probs[idx] > 0:
        return idx

    nonzero = torch.nonzero(probs > 0, as_tuple=False)
    if nonzero.numel() > 0:
        return int(nonzero[-1].item())
    return 0


def greedy(logits: torch.Tensor) -> int:
    """Argmax; ties go to the lowest index."""
    return int(logits.argmax().item())


# =========================================================================
# Full step
# =========================================================================

def sample_token(
    logits: torch.Tensor,
    params: SamplingParams,
    state: Optional[GenerationState] = None,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Sample a single token from logits.

    Args:
        logits: (vocab_size,) float tensor, or (..., vocab_size); last row is used
        params: sampling parameters
        state: generation state of the current call; sampled ids are appended
        generator: optional torch.Generator for reproducible draws

    Returns:
        token_id: int
    """
    if logits.dim() > 1:
        logits = logits.reshape(-1, logits.shape[-1])[-1]
    logits = logits.detach().float().clone()

    # Repetition penalty
    past_tokens = state.token_ids if state is not None else None
    if params.repetition_penalty != 1.0 and past_tokens:
        apply_repetition_penalty(logits, past_tokens, params.repetition_penalty)

    # Greedy short-circuits every later step, history included
    if params.is_greedy:
        return greedy(logits)

    logits = logits / params.temperature
    apply_top_k(logits, params.top_k)
    apply_top_p(logits, params.top_p)
    probs = stable_softmax(logits)
    token_id = sample_from_probs(probs, generator=generator)

    if state is not None:
        state.append(token_id)
    return token_id
