"""
Prompt tokenization bounded by the session's context window.
"""

import logging
from typing import List

from llm_session_lite.core.errors import CapacityExceededError, TokenizationError
from llm_session_lite.core.resources import Session
from llm_session_lite.engine.base import EngineError

logger = logging.getLogger(__name__)


def tokenize_prompt(
    session: Session, text: str, add_bos: bool = True, start: int = 0
) -> List[int]:
    """Tokenize ``text`` for evaluation at position ``start``.

    The prompt must leave at least one free position after it, so a token
    count equal to the remaining window is rejected as well. The result is
    never truncated.

    Args:
        session: Session whose engine and capacity bound the call
        text: Prompt text
        add_bos: Prepend the beginning-of-sequence token
        start: Position the prompt will be evaluated at

    Returns:
        Token ids

    Raises:
        CapacityExceededError: If the prompt does not fit in the window
        TokenizationError: If the engine fails or produces no tokens
    """
    if text is None:
        raise TypeError("text cannot be None")

    available = session.context_capacity - start
    if available <= 0:
        raise CapacityExceededError(0, available)

    try:
        tokens = session.engine.tokenize(session.ctx, text, add_bos, available)
    except EngineError as e:
        if e.code is not None and e.code < 0 and -e.code >= available:
            raise CapacityExceededError(-e.code, available) from e
        raise TokenizationError(f"Failed to tokenize prompt: {e}") from e

    if len(tokens) >= available:
        raise CapacityExceededError(len(tokens), available)
    if not tokens:
        raise TokenizationError("Prompt produced no tokens")

    logger.debug("Tokenized prompt into %d tokens", len(tokens))
    return list(tokens)
