"""
Pytest configuration and shared fixtures for llm-session-lite tests.

This module provides reusable fixtures for testing, including:
- A scripted in-process engine and sessions built on it
- A tiny randomly initialized Llama checkpoint for the transformers engine
- CUDA disabled for all tests
- A fixed sampling seed
"""

import os

import pytest
import torch

from llm_session_lite import SamplingParams, construct, release
from tests.utils.scripted_engine import ScriptedEngine


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""

TEST_SEED = 42

TINY_VOCAB = [
    "<unk>", "<s>", "</s>",
    "hello", "world", "the", "cat", "sat", "on", "mat",
    "a", "dog", "ran", "to", "park", "and", "then", "home",
]


@pytest.fixture
def engine() -> ScriptedEngine:
    """
    Fresh scripted engine per test.

    Each engine carries its own backend reference count, so tests never
    observe backend state left behind by another test.
    """
    return ScriptedEngine()


@pytest.fixture
def session(engine):
    """
    Session on ``valid-model.bin`` with 4 threads and a 512 token window.

    Released after the test unless the test released it already.
    """
    session = construct("valid-model.bin", 4, 512, engine=engine)
    yield session
    if not session.released:
        release(session)


@pytest.fixture
def sampling_params() -> SamplingParams:
    """Default sampling parameters with the fixed test seed."""
    return SamplingParams(top_k=40, top_p=0.95, temperature=1.0, seed=TEST_SEED)


@pytest.fixture(scope="session")
def tiny_model_dir(tmp_path_factory) -> str:
    """
    Save a tiny randomly initialized Llama model and word-level tokenizer.

    The checkpoint has a 64 position window, two layers and a vocabulary of
    a few dozen words, so the transformers engine can be exercised without
    network access.

    Returns:
        str: Directory holding the checkpoint and tokenizer
    """
    from tokenizers import Tokenizer, models, pre_tokenizers
    from transformers import LlamaConfig, LlamaForCausalLM, PreTrainedTokenizerFast

    path = tmp_path_factory.mktemp("tiny-llama")

    vocab = {word: i for i, word in enumerate(TINY_VOCAB)}
    backend = Tokenizer(models.WordLevel(vocab=vocab, unk_token="<unk>"))
    backend.pre_tokenizer = pre_tokenizers.Whitespace()
    tokenizer = PreTrainedTokenizerFast(
        tokenizer_object=backend,
        unk_token="<unk>",
        bos_token="<s>",
        eos_token="</s>",
    )
    tokenizer.save_pretrained(path)

    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=len(TINY_VOCAB),
        hidden_size=16,
        intermediate_size=32,
        num_hidden_layers=2,
        num_attention_heads=2,
        num_key_value_heads=2,
        max_position_embeddings=64,
        bos_token_id=1,
        eos_token_id=2,
    )
    model = LlamaForCausalLM(config)
    model.save_pretrained(path)

    return str(path)


@pytest.fixture(scope="session")
def qwen_model_name() -> str:
    """
    Return the hub model used by the integration tests.

    Returns:
        str: HuggingFace model name
    """
    return "Qwen/Qwen2.5-0.5B"


@pytest.fixture(scope="session")
def byte_level_model_dir(tmp_path_factory) -> str:
    """
    Save a tiny Llama model with a byte-level BPE tokenizer and no merges.

    Every byte is its own token, so any non-ASCII character is split across
    several tokens.

    Returns:
        str: Directory holding the checkpoint and tokenizer
    """
    from tokenizers import Tokenizer, decoders, models, pre_tokenizers
    from transformers import LlamaConfig, LlamaForCausalLM, PreTrainedTokenizerFast

    path = tmp_path_factory.mktemp("byte-level-llama")

    alphabet = sorted(pre_tokenizers.ByteLevel.alphabet())
    vocab = {char: i for i, char in enumerate(alphabet)}
    backend = Tokenizer(models.BPE(vocab=vocab, merges=[]))
    backend.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    backend.decoder = decoders.ByteLevel()
    backend.add_special_tokens(["<s>", "</s>"])
    tokenizer = PreTrainedTokenizerFast(
        tokenizer_object=backend,
        bos_token="<s>",
        eos_token="</s>",
    )
    tokenizer.save_pretrained(path)

    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=len(alphabet) + 2,
        hidden_size=16,
        intermediate_size=32,
        num_hidden_layers=1,
        num_attention_heads=2,
        num_key_value_heads=2,
        max_position_embeddings=64,
        bos_token_id=len(alphabet),
        eos_token_id=len(alphabet) + 1,
    )
    model = LlamaForCausalLM(config)
    model.save_pretrained(path)

    return str(path)
