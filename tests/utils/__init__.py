"""Test utilities for llm_session_lite."""
