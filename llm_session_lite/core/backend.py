"""
Process-wide backend state shared by every model loaded through an engine.

The backend is initialized when the first model of an engine is loaded and
torn down when the last one is released, independent of which session or
model object happens to be created or destroyed first.
"""

import logging
import threading
from typing import Dict

from llm_session_lite.engine.base import InferenceEngine

logger = logging.getLogger(__name__)


class ProcessResourceState:
    """Reference counts of live backend users, one count per engine."""

    def __init__(self):
        self._lock = threading.Lock()
        self._refcounts: Dict[InferenceEngine, int] = {}

    def acquire(self, engine: InferenceEngine, shared: bool = True) -> None:
        """Take a backend reference, initializing the backend on first use.

        Raises:
            EngineError: If backend initialization fails. The count is left
                unchanged in that case.
        """
        with self._lock:
            count = self._refcounts.get(engine, 0)
            if count == 0:
                logger.info("Initializing backend for %s", type(engine).__name__)
                engine.init_backend(shared)
            self._refcounts[engine] = count + 1

    def release(self, engine: InferenceEngine) -> None:
        """Drop a backend reference, tearing the backend down at zero."""
        with self._lock:
            count = self._refcounts.get(engine, 0)
            if count <= 0:
                raise RuntimeError(
                    f"Backend for {type(engine).__name__} released more times than acquired"
                )
            if count == 1:
                del self._refcounts[engine]
                logger.info("Freeing backend for %s", type(engine).__name__)
                engine.free_backend()
            else:
                self._refcounts[engine] = count - 1

    def refcount(self, engine: InferenceEngine) -> int:
        with self._lock:
            return self._refcounts.get(engine, 0)


process_state = ProcessResourceState()
