"""
Inference engines.

Provides:
- InferenceEngine: Interface the session core drives
- EngineError: Failure reported by an engine
- TransformersEngine: torch + transformers implementation
"""

from llm_session_lite.engine.base import EngineError, InferenceEngine
from llm_session_lite.engine.transformers_engine import TransformersEngine

__all__ = ["EngineError", "InferenceEngine", "TransformersEngine"]
