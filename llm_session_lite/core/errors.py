"""
Error taxonomy for sessions and generation requests.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for all errors raised by llm_session_lite."""


class ConstructionError(SessionError):
    """A session could not be constructed."""


class ModelLoadError(ConstructionError):
    """The model path is invalid or the engine rejected the weights."""

    def __init__(self, path: str, reason: Optional[str] = None):
        message = f"Failed to load model from {path!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.path = path


class ContextCreationError(ConstructionError):
    """The engine could not allocate a context for a loaded model."""


class GenerationError(SessionError):
    """A generate request failed before producing any output."""


class TokenizationError(GenerationError):
    """The engine failed to tokenize a prompt."""


class CapacityExceededError(TokenizationError):
    """The prompt does not fit in the session's context window."""

    def __init__(self, token_count: int, capacity: int):
        super().__init__(
            f"Prompt needs {token_count} tokens but only {capacity} "
            f"positions are available in the context window"
        )
        self.token_count = token_count
        self.capacity = capacity


class EvaluationError(GenerationError):
    """The engine failed to evaluate the prompt."""


class SessionStateError(SessionError, RuntimeError):
    """An operation was attempted on a session or model in the wrong state."""


class SessionClosedError(SessionStateError):
    """The session (or model) was released or is no longer usable."""


class SessionBusyError(SessionStateError):
    """Another generate call is already running on this session."""


class ModelInUseError(SessionStateError):
    """A model was released while sessions built from it are still live."""
