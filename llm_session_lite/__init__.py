"""
llm_session_lite: A lightweight inference session for autoregressive text generation.

This package turns a loaded language model into a request/response
generation service:
- Reference-counted backend, model and context lifecycle
- Prompt tokenization bounded by the context window
- Seeded top-k / top-p / temperature sampling
- A generation loop with explicit stop reasons, stop strings,
  cancellation and deadlines
- A torch + transformers engine implementation
"""

__version__ = "0.1.0"
__author__ = "llm-session-lite contributors"

from llm_session_lite.core import (
    CapacityExceededError,
    ConstructionError,
    ContextCreationError,
    EvaluationError,
    GenerationError,
    GenerationRequest,
    GenerationResult,
    ModelInUseError,
    ModelLoadError,
    Session,
    SessionBusyError,
    SessionClosedError,
    SessionConfig,
    SessionError,
    StopReason,
    TokenizationError,
    construct,
    generate,
    generate_stream,
    release,
)
from llm_session_lite.engine import EngineError, InferenceEngine, TransformersEngine
from llm_session_lite.sampling import SamplingParams, SamplingPolicy

__all__ = [
    "CapacityExceededError",
    "ConstructionError",
    "ContextCreationError",
    "EvaluationError",
    "GenerationError",
    "GenerationRequest",
    "GenerationResult",
    "ModelInUseError",
    "ModelLoadError",
    "Session",
    "SessionBusyError",
    "SessionClosedError",
    "SessionConfig",
    "SessionError",
    "StopReason",
    "TokenizationError",
    "construct",
    "generate",
    "generate_stream",
    "release",
    "EngineError",
    "InferenceEngine",
    "TransformersEngine",
    "SamplingParams",
    "SamplingPolicy",
]
