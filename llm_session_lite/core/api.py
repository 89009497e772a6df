"""
Convenience surface: construct a session, generate on it, release it.
"""

import logging
import threading
from typing import Optional, Sequence

from llm_session_lite.core.config import SessionConfig
from llm_session_lite.core.generation import (
    GenerationLoop,
    GenerationRequest,
    GenerationResult,
)
from llm_session_lite.core.resources import (
    Session,
    create_session,
    load_model,
    release_model,
    release_session,
)
from llm_session_lite.engine.base import InferenceEngine
from llm_session_lite.engine.transformers_engine import TransformersEngine
from llm_session_lite.sampling.sampling import SamplingParams

logger = logging.getLogger(__name__)

_default_engine: Optional[InferenceEngine] = None
_default_engine_lock = threading.Lock()


def get_default_engine() -> InferenceEngine:
    """Return the process-wide TransformersEngine, creating it on first use."""
    global _default_engine
    with _default_engine_lock:
        if _default_engine is None:
            _default_engine = TransformersEngine()
        return _default_engine


def construct(
    model_path: Optional[str] = None,
    threads: Optional[int] = None,
    context_capacity: Optional[int] = None,
    engine: Optional[InferenceEngine] = None,
    config: Optional[SessionConfig] = None,
) -> Session:
    """Load a model and create a session that owns it.

    Either pass ``model_path``/``threads``/``context_capacity`` or a
    ``SessionConfig``. Releasing the returned session also releases the model.

    Raises:
        ModelLoadError: If the model cannot be loaded
        ContextCreationError: If the context cannot be allocated (the model
            is released before the error propagates)
    """
    if config is None:
        config = SessionConfig(
            model_path=model_path,
            threads=threads if threads is not None else SessionConfig.threads,
            context_capacity=(
                context_capacity
                if context_capacity is not None
                else SessionConfig.context_capacity
            ),
        )
    elif model_path is not None or threads is not None or context_capacity is not None:
        raise ValueError("Pass either a config or explicit arguments, not both")

    if engine is None:
        engine = get_default_engine()

    model = load_model(
        config.model_path,
        config.threads,
        config.context_capacity,
        engine,
        shared_backend=config.shared_backend,
    )
    try:
        return create_session(
            model,
            config.threads,
            config.context_capacity,
            decode_buffer_size=config.decode_buffer_size,
            owns_model=True,
        )
    except BaseException:
        release_model(model)
        raise


def _build_request(
    prompt: str,
    max_tokens: int,
    sampling: Optional[SamplingParams],
    reset_context: bool,
    stop: Sequence[str],
    cancel_event: Optional[threading.Event],
    timeout: Optional[float],
) -> GenerationRequest:
    return GenerationRequest(
        prompt=prompt,
        max_tokens=max_tokens,
        sampling=sampling if sampling is not None else SamplingParams(),
        reset_context=reset_context,
        stop=tuple(stop),
        cancel_event=cancel_event,
        timeout=timeout,
    )


def generate(
    session: Session,
    prompt: str,
    max_tokens: int,
    sampling: Optional[SamplingParams] = None,
    *,
    reset_context: bool = True,
    stop: Sequence[str] = (),
    cancel_event: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
) -> GenerationResult:
    """Generate up to ``max_tokens`` tokens after ``prompt``.

    Raises:
        CapacityExceededError: If the prompt does not fit the context window
        TokenizationError: If the prompt cannot be tokenized
        EvaluationError: If the prompt evaluation fails
        SessionClosedError: If the session was released or is unusable
        SessionBusyError: If another generate call is running on the session
    """
    request = _build_request(
        prompt, max_tokens, sampling, reset_context, stop, cancel_event, timeout
    )
    return GenerationLoop(session, request).run()


def generate_stream(
    session: Session,
    prompt: str,
    max_tokens: int,
    sampling: Optional[SamplingParams] = None,
    *,
    reset_context: bool = True,
    stop: Sequence[str] = (),
    cancel_event: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
) -> GenerationLoop:
    """Like :func:`generate`, but returns an iterator of text chunks.

    Errors are raised on the first ``next()``. ``loop.result`` holds the
    GenerationResult once iteration finishes.
    """
    request = _build_request(
        prompt, max_tokens, sampling, reset_context, stop, cancel_event, timeout
    )
    return GenerationLoop(session, request)


def release(session: Session) -> None:
    """Release a session (and its model, if the session owns it)."""
    release_session(session)
