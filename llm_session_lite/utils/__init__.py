"""
Utilities and helper functions.

Provides:
- Logging configuration
"""

from llm_session_lite.utils.logger_config import setup_logger

__all__ = ["setup_logger"]
