"""
Sampling policy for next-token selection.

The policy is fixed: top-k restriction, then nucleus (top-p) restriction,
then temperature scaling, then a single draw from the renormalized
distribution. Draws come from a private ``torch.Generator`` so a seed
reproduces the same sequence without touching global RNG state.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import torch


@dataclass(frozen=True)
class SamplingParams:
    """Parameters for the sampling policy.

    Attributes:
        top_k: Candidate pool size (0 disables top-k)
        top_p: Nucleus probability mass (1.0 disables top-p)
        temperature: Sharpening factor (1.0 no-op, 0.0 greedy)
        seed: Seed for a deterministic draw sequence (None = fresh entropy)
        repetition_penalty: Penalty for tokens already in the history
    """
    top_k: int = 40
    top_p: float = 0.95
    temperature: float = 1.0
    seed: Optional[int] = None
    repetition_penalty: float = 1.0

    def __post_init__(self):
        if self.top_k < 0:
            raise ValueError(f"top_k must be >= 0, got {self.top_k}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.temperature < 0.0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")
        if self.repetition_penalty <= 0.0:
            raise ValueError(
                f"repetition_penalty must be > 0, got {self.repetition_penalty}"
            )


def greedy_sampling(logits: torch.Tensor) -> int:
    """Greedy sampling (argmax)."""
    return int(logits.argmax(dim=-1))


def temperature_scaling(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """Apply temperature scaling."""
    return logits / temperature


def top_k_filtering(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Keep the k highest logits, mask the rest to -inf."""
    if k <= 0 or k >= logits.shape[-1]:
        return logits

    top_k_logits, top_k_indices = torch.topk(logits, k, dim=-1)

    mask = torch.full_like(logits, float("-inf"))
    mask.scatter_(-1, top_k_indices, top_k_logits)

    return mask


def top_p_filtering(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Keep the smallest prefix whose cumulative probability reaches p."""
    if p >= 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True, dim=-1)
    cumulative_probs = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # A token is dropped once the mass *before* it already reaches p
    sorted_to_remove = cumulative_probs >= p
    sorted_to_remove[..., 1:] = sorted_to_remove[..., :-1].clone()
    sorted_to_remove[..., 0] = False

    to_remove = sorted_to_remove.scatter(-1, sorted_indices, sorted_to_remove)
    return logits.masked_fill(to_remove, float("-inf"))


def apply_repetition_penalty(
    logits: torch.Tensor, previous_tokens: Sequence[int], penalty: float
) -> torch.Tensor:
    """Apply repetition penalty."""
    if penalty == 1.0 or not previous_tokens:
        return logits

    logits = logits.clone()
    for token in set(previous_tokens):
        if logits[token] > 0:
            logits[token] /= penalty
        else:
            logits[token] *= penalty

    return logits


class SamplingPolicy:
    """Draws next tokens from logits under a fixed :class:`SamplingParams`.

    One policy is built per generate request; its generator advances with
    every draw, so a given seed yields the same token sequence on every run.
    """

    def __init__(self, params: Optional[SamplingParams] = None):
        self.params = params or SamplingParams()
        self.generator = torch.Generator(device="cpu")
        if self.params.seed is not None:
            self.generator.manual_seed(self.params.seed)
        else:
            self.generator.seed()

    def sample_next(
        self, logits: torch.Tensor, history: Sequence[int] = ()
    ) -> int:
        """Sample the next token id.

        Args:
            logits: Logits of shape [vocab_size]
            history: Token ids already in the sequence (for repetition penalty)

        Returns:
            Selected token id
        """
        params = self.params
        logits = logits.detach().to(device="cpu", dtype=torch.float32).reshape(-1)

        logits = apply_repetition_penalty(logits, history, params.repetition_penalty)

        if params.temperature == 0.0:
            return greedy_sampling(logits)

        logits = top_k_filtering(logits, params.top_k)
        logits = top_p_filtering(logits, params.top_p)

        if params.temperature != 1.0:
            logits = temperature_scaling(logits, params.temperature)

        probs = torch.softmax(logits, dim=-1)
        return int(torch.multinomial(probs, num_samples=1, generator=self.generator))
