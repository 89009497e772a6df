"""
Autoregressive generation loop.

A request moves through PROMPT_EVAL -> DECODING -> TERMINATED. Failures
before any output exists (tokenization, prompt evaluation) raise; every exit
from DECODING returns a GenerationResult carrying the text produced so far
and the reason generation stopped.
"""

import codecs
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple

from llm_session_lite.core.errors import EvaluationError, SessionBusyError
from llm_session_lite.core.resources import Session
from llm_session_lite.core.tokenization import tokenize_prompt
from llm_session_lite.engine.base import EngineError
from llm_session_lite.sampling.sampling import SamplingParams, SamplingPolicy

logger = logging.getLogger(__name__)


class LoopState(Enum):
    """State of the generation loop."""

    PROMPT_EVAL = "prompt_eval"  # Prompt is being tokenized and evaluated
    DECODING = "decoding"  # Tokens are being sampled one at a time
    TERMINATED = "terminated"  # A stop condition fired


class StopReason(Enum):
    """Why decoding stopped."""

    EOS = "eos"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    DECODE_FAILURE = "decode_failure"
    EVALUATION_FAILURE = "evaluation_failure"
    CONTEXT_WINDOW_EXCEEDED = "context_window_exceeded"
    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline_exceeded"


_COMPLETE_REASONS = (StopReason.EOS, StopReason.MAX_TOKENS, StopReason.STOP_SEQUENCE)


@dataclass(frozen=True)
class GenerationRequest:
    """A single generate call.

    Attributes:
        prompt: Prompt text
        max_tokens: Maximum number of tokens to generate
        sampling: Sampling parameters
        reset_context: Evaluate the prompt at position 0 (True) or append it
            after the tokens already in the session (False)
        stop: Strings that end generation; they are cut from the text
        add_bos: Prepend the beginning-of-sequence token at position 0
        cancel_event: Checked before every decoding step
        timeout: Wall-clock budget in seconds for the decoding phase
    """

    prompt: str
    max_tokens: int
    sampling: SamplingParams = field(default_factory=SamplingParams)
    reset_context: bool = True
    stop: Tuple[str, ...] = ()
    add_bos: bool = True
    cancel_event: Optional[threading.Event] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.prompt, str):
            raise TypeError(f"prompt must be a str, got {type(self.prompt).__name__}")
        if not isinstance(self.max_tokens, int) or isinstance(self.max_tokens, bool):
            raise TypeError("max_tokens must be an int")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be > 0, got {self.max_tokens}")
        if self.timeout is not None and self.timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {self.timeout}")
        stop = (self.stop,) if isinstance(self.stop, str) else tuple(self.stop)
        if any(not s for s in stop):
            raise ValueError("stop strings cannot be empty")
        object.__setattr__(self, "stop", stop)


@dataclass
class GenerationResult:
    """Outcome of a generate call.

    Attributes:
        text: Generated text (EOS and stop strings excluded)
        stop_reason: Why decoding stopped
        token_count: Number of tokens produced
        prompt_token_count: Number of prompt tokens evaluated
        tokens: Generated token ids
    """

    text: str
    stop_reason: StopReason
    token_count: int
    prompt_token_count: int = 0
    tokens: List[int] = field(default_factory=list)

    @property
    def truncated(self) -> bool:
        """True when generation was cut short rather than finishing."""
        return self.stop_reason not in _COMPLETE_REASONS


def _find_stop(text: str, stops: Sequence[str], start: int) -> Optional[int]:
    hits = [i for i in (text.find(s, start) for s in stops) if i >= 0]
    return min(hits) if hits else None


class GenerationLoop:
    """Drives one request on a session.

    Iterating yields text chunks as they become final; ``result`` is set
    once the loop terminates. Text that could still turn into a stop string
    is held back until it can no longer match.
    """

    def __init__(self, session: Session, request: GenerationRequest):
        self.session = session
        self.request = request
        self.state = LoopState.PROMPT_EVAL
        self.result: Optional[GenerationResult] = None
        self._chunks = self._run()

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        return next(self._chunks)

    def close(self) -> None:
        """Stop iterating early and free the session for other requests."""
        self._chunks.close()

    def __enter__(self) -> "GenerationLoop":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run(self) -> GenerationResult:
        """Run the loop to completion."""
        for _ in self:
            pass
        return self.result

    def _run(self) -> Iterator[str]:
        session = self.session
        if not session._busy.acquire(blocking=False):
            raise SessionBusyError("Another generate call is running on this session")
        try:
            session.ensure_usable()
            yield from self._generate()
        finally:
            self.state = LoopState.TERMINATED
            session._busy.release()

    def _generate(self) -> Iterator[str]:
        session = self.session
        request = self.request
        engine = session.engine
        ctx = session.ctx

        # Prompt evaluation
        start = 0 if request.reset_context else session.cursor
        prompt_tokens = tokenize_prompt(
            session, request.prompt, add_bos=request.add_bos and start == 0, start=start
        )
        n_prompt = len(prompt_tokens)

        try:
            engine.evaluate(ctx, prompt_tokens, start, session.threads)
        except EngineError as e:
            # The engine may have advanced its cache part way
            session.usable = False
            logger.warning("Prompt evaluation failed, session marked unusable: %s", e)
            raise EvaluationError(f"Failed to evaluate prompt: {e}") from e
        session.cursor = start + n_prompt

        # Decoding
        self.state = LoopState.DECODING
        policy = SamplingPolicy(request.sampling)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        deadline = None
        if request.timeout is not None:
            deadline = time.monotonic() + request.timeout
        holdback = max((len(s) for s in request.stop), default=1) - 1

        history = list(prompt_tokens)
        generated: List[int] = []
        text = ""
        emitted = 0
        stop_reason = StopReason.MAX_TOKENS

        for i in range(request.max_tokens):
            if request.cancel_event is not None and request.cancel_event.is_set():
                stop_reason = StopReason.CANCELLED
                break
            if deadline is not None and time.monotonic() >= deadline:
                stop_reason = StopReason.DEADLINE_EXCEEDED
                break

            try:
                logits = engine.get_logits(ctx)
            except EngineError as e:
                logger.warning("No logits after position %d: %s", session.cursor, e)
                stop_reason = StopReason.EVALUATION_FAILURE
                break
            token = policy.sample_next(logits, history)

            if engine.is_eos(ctx, token):
                stop_reason = StopReason.EOS
                break

            try:
                piece = engine.token_to_bytes(ctx, token, session.decode_buffer_size)
            except EngineError as e:
                logger.warning("Failed to render token %d: %s", token, e)
                stop_reason = StopReason.DECODE_FAILURE
                break
            if piece is None:
                logger.warning(
                    "Token %d does not fit in a %d byte decode buffer",
                    token, session.decode_buffer_size,
                )
                stop_reason = StopReason.DECODE_FAILURE
                break

            text += decoder.decode(piece)
            generated.append(token)
            history.append(token)

            stop_at = _find_stop(text, request.stop, emitted)
            if stop_at is not None:
                text = text[:stop_at]
                stop_reason = StopReason.STOP_SEQUENCE
                break

            position = start + n_prompt + i
            if position + 1 > session.context_capacity:
                stop_reason = StopReason.CONTEXT_WINDOW_EXCEEDED
                break

            try:
                engine.evaluate(ctx, [token], position, session.threads)
            except EngineError as e:
                logger.warning("Evaluation failed at position %d: %s", position, e)
                stop_reason = StopReason.EVALUATION_FAILURE
                break
            session.cursor = position + 1

            safe = len(text) - holdback
            if safe > emitted:
                yield text[emitted:safe]
                emitted = safe

        pending = decoder.getstate()[0]
        if pending and stop_reason in (StopReason.EOS, StopReason.MAX_TOKENS):
            # The last character never completed, its bytes are dropped
            logger.warning("Dropping %d bytes of an incomplete character", len(pending))
            stop_reason = StopReason.DECODE_FAILURE

        self.state = LoopState.TERMINATED
        self.result = GenerationResult(
            text=text,
            stop_reason=stop_reason,
            token_count=len(generated),
            prompt_token_count=n_prompt,
            tokens=generated,
        )
        logger.debug(
            "Generation stopped (%s) after %d tokens", stop_reason.value, len(generated)
        )

        if len(text) > emitted:
            yield text[emitted:]


def generate(session: Session, request: GenerationRequest) -> GenerationResult:
    """Run ``request`` on ``session`` and return its result."""
    return GenerationLoop(session, request).run()
