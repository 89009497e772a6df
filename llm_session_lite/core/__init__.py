"""
Core session module.

Provides the main API and orchestrates all components:
- construct / generate / generate_stream / release: Main entry points
- ModelHandle, Session: Resource lifecycle (load, create, release)
- tokenize_prompt: Tokenization bounded by the context window
- GenerationLoop: Prompt evaluation and decoding state machine
- SessionConfig: Session configuration
"""

from llm_session_lite.core.api import (
    construct,
    generate,
    generate_stream,
    get_default_engine,
    release,
)
from llm_session_lite.core.config import SessionConfig
from llm_session_lite.core.errors import (
    CapacityExceededError,
    ConstructionError,
    ContextCreationError,
    EvaluationError,
    GenerationError,
    ModelInUseError,
    ModelLoadError,
    SessionBusyError,
    SessionClosedError,
    SessionError,
    SessionStateError,
    TokenizationError,
)
from llm_session_lite.core.generation import (
    GenerationLoop,
    GenerationRequest,
    GenerationResult,
    LoopState,
    StopReason,
)
from llm_session_lite.core.resources import (
    ModelHandle,
    Session,
    create_session,
    load_model,
    release_model,
    release_session,
)
from llm_session_lite.core.tokenization import tokenize_prompt

__all__ = [
    "construct",
    "generate",
    "generate_stream",
    "get_default_engine",
    "release",
    "SessionConfig",
    "CapacityExceededError",
    "ConstructionError",
    "ContextCreationError",
    "EvaluationError",
    "GenerationError",
    "ModelInUseError",
    "ModelLoadError",
    "SessionBusyError",
    "SessionClosedError",
    "SessionError",
    "SessionStateError",
    "TokenizationError",
    "GenerationLoop",
    "GenerationRequest",
    "GenerationResult",
    "LoopState",
    "StopReason",
    "ModelHandle",
    "Session",
    "create_session",
    "load_model",
    "release_model",
    "release_session",
    "tokenize_prompt",
]
