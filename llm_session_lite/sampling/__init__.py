"""
Token sampling.

Provides:
- SamplingParams: Sampling configuration dataclass
- SamplingPolicy: Seeded top-k / top-p / temperature sampler
"""

from llm_session_lite.sampling.sampling import SamplingParams, SamplingPolicy

__all__ = ["SamplingParams", "SamplingPolicy"]
