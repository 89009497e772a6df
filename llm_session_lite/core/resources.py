"""
Lifecycle of model handles and sessions.

A ModelHandle owns loaded weights and one backend reference. A Session owns
one engine context built from a ModelHandle. Sessions must be released
before the model they were built from; both releases are idempotent.
"""

import logging
import threading
from typing import Any, Dict, Optional

from llm_session_lite.core.backend import process_state
from llm_session_lite.core.errors import (
    ContextCreationError,
    ModelInUseError,
    ModelLoadError,
    SessionBusyError,
    SessionClosedError,
)
from llm_session_lite.engine.base import EngineError, InferenceEngine

logger = logging.getLogger(__name__)


def _check_positive(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {value}")


class ModelHandle:
    """Loaded model weights.

    Attributes:
        path: Path the model was loaded from
        params: Load-time parameters
        engine: Engine that loaded the model
        model: Engine's opaque model object
    """

    def __init__(
        self,
        path: str,
        params: Dict[str, Any],
        engine: InferenceEngine,
        model: Any,
    ):
        self.path = path
        self.params = dict(params)
        self.engine = engine
        self.model = model
        self._lock = threading.Lock()
        self._live_sessions = 0
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def live_sessions(self) -> int:
        with self._lock:
            return self._live_sessions

    def _attach(self) -> None:
        with self._lock:
            if self._released:
                raise SessionClosedError(f"Model {self.path!r} has been released")
            self._live_sessions += 1

    def _detach(self) -> None:
        with self._lock:
            self._live_sessions -= 1

    def close(self) -> None:
        release_model(self)

    def __enter__(self) -> "ModelHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "released" if self._released else f"sessions={self.live_sessions}"
        return f"ModelHandle(path={self.path!r}, {state})"


class Session:
    """Runtime state (context) of one model.

    Attributes:
        model: ModelHandle the session was built from
        ctx: Engine's opaque context object
        threads: Worker threads used for evaluation
        context_capacity: Maximum number of token positions
        decode_buffer_size: Byte capacity for rendering one token
        cursor: Next position to evaluate
        owns_model: Release the model together with the session
    """

    def __init__(
        self,
        model: ModelHandle,
        ctx: Any,
        threads: int,
        context_capacity: int,
        decode_buffer_size: int,
        owns_model: bool = False,
    ):
        self.model = model
        self.ctx = ctx
        self.threads = threads
        self.context_capacity = context_capacity
        self.decode_buffer_size = decode_buffer_size
        self.cursor = 0
        self.owns_model = owns_model
        self.usable = True
        self._released = False
        self._busy = threading.Lock()

    @property
    def engine(self) -> InferenceEngine:
        return self.model.engine

    @property
    def released(self) -> bool:
        return self._released

    def ensure_usable(self) -> None:
        """Raise SessionClosedError unless the session can run a request."""
        if self._released:
            raise SessionClosedError("Session has been released")
        if not self.usable:
            raise SessionClosedError(
                "Session is no longer usable after a failed prompt evaluation; "
                "release it and construct a new one"
            )

    def close(self) -> None:
        release_session(self)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Session(model={self.model.path!r}, cursor={self.cursor}, "
            f"capacity={self.context_capacity}, released={self._released})"
        )


def load_model(
    path: str,
    threads: int,
    context_capacity: int,
    engine: InferenceEngine,
    shared_backend: bool = True,
) -> ModelHandle:
    """Load a model, taking a reference on the process-wide backend.

    Args:
        path: Model path or hub id
        threads: Worker thread count (load-time parameter)
        context_capacity: Context window the model will be used with
        engine: Engine to load the model with
        shared_backend: Passed to backend initialization

    Returns:
        ModelHandle owning the weights and one backend reference

    Raises:
        ModelLoadError: If the path is invalid or the weights are rejected
    """
    if not path:
        raise ValueError("path cannot be empty")
    _check_positive("threads", threads)
    _check_positive("context_capacity", context_capacity)

    params = {"threads": threads, "context_capacity": context_capacity}

    try:
        process_state.acquire(engine, shared_backend)
    except EngineError as e:
        raise ModelLoadError(path, f"backend initialization failed: {e}") from e

    try:
        model = engine.load_model(path, params)
    except EngineError as e:
        process_state.release(engine)
        logger.warning("Failed to load model %s: %s", path, e)
        raise ModelLoadError(path, str(e)) from e
    except BaseException:
        process_state.release(engine)
        raise

    logger.info("Loaded model %s", path)
    return ModelHandle(path, params, engine, model)


def create_session(
    model: ModelHandle,
    threads: int,
    context_capacity: int,
    decode_buffer_size: Optional[int] = None,
    owns_model: bool = False,
) -> Session:
    """Allocate a new context for ``model``.

    On failure ``model`` stays valid and must still be released by its owner.

    Raises:
        ContextCreationError: If the engine cannot allocate the context
        SessionClosedError: If ``model`` has been released
    """
    _check_positive("threads", threads)
    _check_positive("context_capacity", context_capacity)
    if decode_buffer_size is not None:
        _check_positive("decode_buffer_size", decode_buffer_size)

    if model.released:
        raise SessionClosedError(f"Model {model.path!r} has been released")

    engine = model.engine
    if decode_buffer_size is None:
        decode_buffer_size = engine.max_token_bytes(model.model)

    model._attach()
    try:
        ctx = engine.new_context(model.model, context_capacity, threads)
    except EngineError as e:
        model._detach()
        logger.warning("Failed to create context for %s: %s", model.path, e)
        raise ContextCreationError(
            f"Failed to create context for {model.path!r}: {e}"
        ) from e
    except BaseException:
        model._detach()
        raise

    logger.debug(
        "Created session for %s (capacity=%d, threads=%d)",
        model.path, context_capacity, threads,
    )
    return Session(
        model,
        ctx,
        threads=threads,
        context_capacity=context_capacity,
        decode_buffer_size=decode_buffer_size,
        owns_model=owns_model,
    )


def release_session(session: Session) -> None:
    """Free the session's context. A second call is a no-op."""
    if session._released:
        logger.debug("Session already released")
        return
    if not session._busy.acquire(blocking=False):
        raise SessionBusyError("Cannot release a session while a generate call is running")

    if session._released:
        session._busy.release()
        logger.debug("Session already released")
        return

    try:
        session._released = True
        session.engine.free_context(session.ctx)
        session.ctx = None
    finally:
        session.model._detach()
        session._busy.release()

    logger.debug("Released session for %s", session.model.path)
    if session.owns_model:
        release_model(session.model)


def release_model(model: ModelHandle) -> None:
    """Free the model and drop its backend reference. A second call is a no-op.

    Raises:
        ModelInUseError: If sessions built from the model are still live
    """
    with model._lock:
        if model._released:
            logger.debug("Model %s already released", model.path)
            return
        if model._live_sessions > 0:
            raise ModelInUseError(
                f"Model {model.path!r} still has {model._live_sessions} live session(s)"
            )
        model._released = True

    try:
        model.engine.free_model(model.model)
        model.model = None
    finally:
        process_state.release(model.engine)
    logger.info("Released model %s", model.path)
