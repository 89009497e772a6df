"""
Inference engine interface consumed by the session core.

An engine owns the numeric side of inference: weights, tokenizer, logits and
its compute cache. The core only ever talks to it through the methods below
and treats the objects it returns (models, contexts) as opaque handles.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import torch


class EngineError(RuntimeError):
    """Failure reported by an inference engine.

    Attributes:
        code: Optional engine status code. Tokenizers report a negative
            count here when the output buffer was too small, with the
            magnitude being the number of tokens that were needed.
    """

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class InferenceEngine(ABC):
    """Abstract inference engine."""

    @abstractmethod
    def init_backend(self, shared: bool) -> None:
        """Initialize process-wide backend state."""

    @abstractmethod
    def free_backend(self) -> None:
        """Tear down process-wide backend state."""

    @abstractmethod
    def load_model(self, path: str, params: Dict[str, Any]) -> Any:
        """Load weights and tokenizer from ``path``.

        Raises:
            EngineError: If the path is invalid or the weights are rejected
        """

    @abstractmethod
    def free_model(self, model: Any) -> None:
        """Release a model returned by :meth:`load_model`."""

    @abstractmethod
    def new_context(self, model: Any, context_capacity: int, threads: int) -> Any:
        """Allocate a runtime context (compute cache) for ``model``.

        Raises:
            EngineError: If the context cannot be allocated
        """

    @abstractmethod
    def free_context(self, ctx: Any) -> None:
        """Release a context returned by :meth:`new_context`."""

    @abstractmethod
    def tokenize(
        self, ctx: Any, text: str, add_bos: bool, max_tokens: int
    ) -> List[int]:
        """Tokenize ``text`` into at most ``max_tokens`` ids.

        Raises:
            EngineError: With ``code = -needed`` when more than
                ``max_tokens`` ids would be produced
        """

    @abstractmethod
    def evaluate(self, ctx: Any, tokens: List[int], n_past: int, threads: int) -> None:
        """Run ``tokens`` through the model starting at position ``n_past``.

        Raises:
            EngineError: If evaluation fails
        """

    @abstractmethod
    def get_logits(self, ctx: Any) -> torch.Tensor:
        """Logits for the last evaluated position, shape ``[vocab_size]``."""

    @abstractmethod
    def token_to_bytes(self, ctx: Any, token: int, capacity: int) -> Optional[bytes]:
        """Render ``token`` as bytes, or ``None`` if it needs more than ``capacity``."""

    @abstractmethod
    def is_eos(self, ctx: Any, token: int) -> bool:
        """Whether ``token`` is an end-of-sequence marker."""

    @abstractmethod
    def max_token_bytes(self, model: Any) -> int:
        """Upper bound on the byte length of any single token."""
