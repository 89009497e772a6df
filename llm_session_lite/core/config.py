"""
Session configuration.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class SessionConfig:
    """Configuration for constructing a session.

    Attributes:
        model_path: Path (or hub id) of the model to load
        threads: Worker threads handed to the engine for evaluation
        context_capacity: Context window size in tokens
        decode_buffer_size: Byte buffer for rendering one token
            (None = the engine's maximum token byte length)
        shared_backend: Passed to the engine's backend initialization
    """

    model_path: str
    threads: int = 4
    context_capacity: int = 512
    decode_buffer_size: Optional[int] = None
    shared_backend: bool = True

    def __post_init__(self):
        if not self.model_path:
            raise ValueError("model_path cannot be empty")
        if self.threads <= 0:
            raise ValueError(f"threads must be > 0, got {self.threads}")
        if self.context_capacity <= 0:
            raise ValueError(
                f"context_capacity must be > 0, got {self.context_capacity}"
            )
        if self.decode_buffer_size is not None and self.decode_buffer_size <= 0:
            raise ValueError(
                f"decode_buffer_size must be > 0, got {self.decode_buffer_size}"
            )

    @classmethod
    def from_env(cls, prefix: str = "LLM_SESSION_") -> "SessionConfig":
        """Build a config from environment variables.

        Reads ``{prefix}MODEL_PATH`` (required), ``{prefix}THREADS``,
        ``{prefix}CONTEXT_CAPACITY``, ``{prefix}DECODE_BUFFER_SIZE`` and
        ``{prefix}SHARED_BACKEND``.
        """
        model_path = os.environ.get(f"{prefix}MODEL_PATH")
        if not model_path:
            raise ValueError(f"{prefix}MODEL_PATH is not set")

        kwargs = {"model_path": model_path}
        if f"{prefix}THREADS" in os.environ:
            kwargs["threads"] = int(os.environ[f"{prefix}THREADS"])
        if f"{prefix}CONTEXT_CAPACITY" in os.environ:
            kwargs["context_capacity"] = int(os.environ[f"{prefix}CONTEXT_CAPACITY"])
        if f"{prefix}DECODE_BUFFER_SIZE" in os.environ:
            kwargs["decode_buffer_size"] = int(os.environ[f"{prefix}DECODE_BUFFER_SIZE"])
        if f"{prefix}SHARED_BACKEND" in os.environ:
            kwargs["shared_backend"] = os.environ[f"{prefix}SHARED_BACKEND"].lower() in (
                "1", "true", "yes", "on",
            )

        return cls(**kwargs)
