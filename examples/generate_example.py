"""
Example demonstrating session construction, generation and streaming.

This example loads a model through the transformers engine, generates a
seeded completion, then streams a second completion with a stop string.
"""

import logging
import threading

from llm_session_lite import SamplingParams, construct, generate, generate_stream
from llm_session_lite.utils import setup_logger

setup_logger(level=logging.INFO)

print("Constructing session...")
with construct("Qwen/Qwen2.5-0.5B", threads=4, context_capacity=512) as session:
    params = SamplingParams(top_k=40, top_p=0.95, temperature=1.0, seed=42)

    result = generate(session, "The capital of France is", max_tokens=16, sampling=params)
    print(f"\nGenerated: {result.text!r}")
    print(f"  Tokens: {result.token_count}")
    print(f"  Stop reason: {result.stop_reason.value}")

    print("\nStreaming...")
    cancel = threading.Event()
    loop = generate_stream(
        session,
        "User: Tell me a story.\nAssistant:",
        max_tokens=64,
        sampling=params,
        stop=["User:"],
        cancel_event=cancel,
        timeout=30.0,
    )
    for chunk in loop:
        print(chunk, end="", flush=True)
    print(f"\n  Stop reason: {loop.result.stop_reason.value}")
    if loop.result.truncated:
        print("  (output was cut short)")
