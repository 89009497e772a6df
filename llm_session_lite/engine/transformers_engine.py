"""
Inference engine backed by HuggingFace transformers.

A context is a ``DynamicCache`` plus the logits of the last evaluated
position. Evaluating at an earlier position than the cache holds crops the
cache back to that position first.

Tokens are rendered to the raw bytes they stand for, so a character split
across several byte-level or byte-fallback tokens reaches the caller intact.
"""

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, DynamicCache
from transformers.convert_slow_tokenizer import bytes_to_unicode

from llm_session_lite.engine.base import EngineError, InferenceEngine

logger = logging.getLogger(__name__)

_BYTE_PIECE = re.compile(r"<0x([0-9A-Fa-f]{2})>")
_METASPACE = "▁"

# torch's intra-op thread count is process-wide. It is saved when the first
# engine backend comes up and restored when the last one goes down.
_threads_lock = threading.Lock()
_threads_users = 0
_threads_saved: Optional[int] = None


@dataclass
class TransformersModel:
    """Loaded weights and tokenizer."""

    path: str
    model: Any
    tokenizer: Any
    eos_token_ids: FrozenSet[int]
    max_positions: Optional[int]
    max_token_bytes: int
    byte_decoder: Optional[Dict[str, int]] = None
    byte_fallback: bool = False
    metaspace: bool = False
    added_token_ids: FrozenSet[int] = field(default_factory=frozenset)


@dataclass
class TransformersContext:
    """Per-session compute cache."""

    model: TransformersModel
    capacity: int
    threads: int
    cache: Optional[DynamicCache] = None
    n_past: int = 0
    logits: Optional[torch.Tensor] = None
    last_token: Optional[int] = None


def _collect_eos_ids(model: Any, tokenizer: Any) -> FrozenSet[int]:
    ids = set()
    generation_config = getattr(model, "generation_config", None)
    for value in (
        getattr(generation_config, "eos_token_id", None),
        getattr(model.config, "eos_token_id", None),
        tokenizer.eos_token_id,
    ):
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            ids.update(int(v) for v in value)
        else:
            ids.add(int(value))
    return frozenset(ids)


def _max_token_bytes(tokenizer: Any) -> int:
    # Vocabulary strings are an upper bound on the bytes they render to
    longest = max(len(piece.encode("utf-8")) for piece in tokenizer.get_vocab())
    return longest + 1  # leading space restored by differential decoding


def _decoder_types(tokenizer: Any) -> FrozenSet[str]:
    """Types of every step in a fast tokenizer's decoder pipeline."""
    backend = getattr(tokenizer, "backend_tokenizer", None)
    if backend is None:
        return frozenset()
    types = set()
    stack = [json.loads(backend.to_str()).get("decoder")]
    while stack:
        node = stack.pop()
        if not isinstance(node, dict):
            continue
        if node.get("type") == "Replace" and node.get("pattern", {}).get("String") == _METASPACE:
            types.add("Metaspace")
        elif node.get("type"):
            types.add(node["type"])
        stack.extend(node.get("decoders") or [])
    return frozenset(types)


def _raw_token_bytes(model: TransformersModel, token: int) -> Optional[bytes]:
    """Bytes a vocabulary piece stands for, or None if the vocabulary is text.

    Added and special tokens are stored as plain text and are left to the
    caller.
    """
    if token in model.added_token_ids:
        return None
    piece = model.tokenizer.convert_ids_to_tokens(token)
    if piece is None:
        return None

    if model.byte_decoder is not None:
        try:
            return bytes(model.byte_decoder[char] for char in piece)
        except KeyError:
            return None

    if model.byte_fallback:
        match = _BYTE_PIECE.fullmatch(piece)
        if match:
            return bytes([int(match.group(1), 16)])
    if model.metaspace:
        return piece.replace(_METASPACE, " ").encode("utf-8")
    return None


class TransformersEngine(InferenceEngine):
    """Inference engine running ``AutoModelForCausalLM`` models with torch."""

    def __init__(
        self,
        device: str = "cpu",
        dtype: torch.dtype = torch.float32,
        trust_remote_code: bool = False,
        local_files_only: bool = False,
    ):
        """Initialize the engine.

        Args:
            device: Device to run inference on ("cpu" or "cuda")
            dtype: Dtype the weights are loaded in
            trust_remote_code: Allow custom modeling code from the hub
            local_files_only: Never download from the hub
        """
        self.device = device
        self.dtype = dtype
        self.trust_remote_code = trust_remote_code
        self.local_files_only = local_files_only
        self.backend_ready = False

    def init_backend(self, shared: bool) -> None:
        global _threads_users, _threads_saved
        with _threads_lock:
            if _threads_users == 0:
                _threads_saved = torch.get_num_threads()
            _threads_users += 1
        self.backend_ready = True
        logger.debug("Backend initialized (shared=%s)", shared)

    def free_backend(self) -> None:
        global _threads_users, _threads_saved
        if not self.backend_ready:
            return
        with _threads_lock:
            _threads_users -= 1
            if _threads_users == 0 and _threads_saved is not None:
                torch.set_num_threads(_threads_saved)
                _threads_saved = None
        if self.device.startswith("cuda") and torch.cuda.is_available():
            torch.cuda.empty_cache()
        self.backend_ready = False
        logger.debug("Backend freed")

    def load_model(self, path: str, params: Dict[str, Any]) -> TransformersModel:
        if not self.backend_ready:
            raise EngineError("Backend is not initialized")
        if not path:
            raise EngineError("Model path cannot be empty")
        if (os.path.isabs(path) or path.startswith(".")) and not os.path.exists(path):
            raise EngineError(f"Model path does not exist: {path}")

        try:
            tokenizer = AutoTokenizer.from_pretrained(
                path,
                trust_remote_code=self.trust_remote_code,
                local_files_only=self.local_files_only,
            )
            model = AutoModelForCausalLM.from_pretrained(
                path,
                torch_dtype=self.dtype,
                trust_remote_code=self.trust_remote_code,
                local_files_only=self.local_files_only,
            )
        except Exception as e:
            raise EngineError(f"Failed to load weights: {e}") from e

        model.to(self.device)
        model.eval()

        decoders = _decoder_types(tokenizer)
        byte_decoder = None
        if "ByteLevel" in decoders:
            byte_decoder = {char: byte for byte, char in bytes_to_unicode().items()}

        return TransformersModel(
            path=path,
            model=model,
            tokenizer=tokenizer,
            eos_token_ids=_collect_eos_ids(model, tokenizer),
            max_positions=getattr(model.config, "max_position_embeddings", None),
            max_token_bytes=_max_token_bytes(tokenizer),
            byte_decoder=byte_decoder,
            byte_fallback="ByteFallback" in decoders,
            metaspace="Metaspace" in decoders,
            added_token_ids=frozenset(tokenizer.get_added_vocab().values()),
        )

    def free_model(self, model: TransformersModel) -> None:
        model.model = None
        model.tokenizer = None

    def new_context(
        self, model: TransformersModel, context_capacity: int, threads: int
    ) -> TransformersContext:
        if model.max_positions is not None and context_capacity > model.max_positions:
            raise EngineError(
                f"Context capacity {context_capacity} exceeds the model's "
                f"{model.max_positions} positions"
            )
        return TransformersContext(
            model=model,
            capacity=context_capacity,
            threads=threads,
            cache=DynamicCache(),
        )

    def free_context(self, ctx: TransformersContext) -> None:
        ctx.cache = None
        ctx.logits = None

    def tokenize(
        self, ctx: TransformersContext, text: str, add_bos: bool, max_tokens: int
    ) -> List[int]:
        tokenizer = ctx.model.tokenizer
        try:
            ids = tokenizer.encode(text, add_special_tokens=False)
        except Exception as e:
            raise EngineError(f"Tokenizer failed: {e}") from e

        bos = tokenizer.bos_token_id
        if add_bos and bos is not None:
            ids = [bos] + ids

        if len(ids) > max_tokens:
            raise EngineError(
                f"Text needs {len(ids)} tokens, buffer holds {max_tokens}",
                code=-len(ids),
            )
        return ids

    def evaluate(
        self, ctx: TransformersContext, tokens: List[int], n_past: int, threads: int
    ) -> None:
        if not tokens:
            raise EngineError("No tokens to evaluate")
        if n_past > ctx.n_past:
            raise EngineError(
                f"Cannot evaluate at position {n_past}, only {ctx.n_past} positions are cached"
            )
        if n_past + len(tokens) > ctx.capacity:
            raise EngineError(
                f"Evaluating {len(tokens)} tokens at {n_past} exceeds capacity {ctx.capacity}"
            )

        if n_past == 0:
            ctx.cache = DynamicCache()
        elif n_past < ctx.n_past:
            ctx.cache.crop(n_past)
        ctx.n_past = n_past

        # Process-wide: the most recent evaluate sets the count for everyone
        if torch.get_num_threads() != threads:
            torch.set_num_threads(threads)

        input_ids = torch.tensor([tokens], dtype=torch.long, device=self.device)
        position_ids = torch.arange(
            n_past, n_past + len(tokens), dtype=torch.long, device=self.device
        ).unsqueeze(0)

        try:
            with torch.inference_mode():
                outputs = ctx.model.model(
                    input_ids=input_ids,
                    position_ids=position_ids,
                    past_key_values=ctx.cache,
                    use_cache=True,
                )
        except Exception as e:
            ctx.n_past = ctx.cache.get_seq_length()
            raise EngineError(f"Forward pass failed: {e}") from e

        ctx.cache = outputs.past_key_values
        ctx.logits = outputs.logits[0, -1].float()
        ctx.n_past = n_past + len(tokens)
        ctx.last_token = tokens[-1]

    def get_logits(self, ctx: TransformersContext) -> torch.Tensor:
        if ctx.logits is None:
            raise EngineError("No logits available, nothing has been evaluated")
        return ctx.logits

    def token_to_bytes(
        self, ctx: TransformersContext, token: int, capacity: int
    ) -> Optional[bytes]:
        data = _raw_token_bytes(ctx.model, token)
        if data is None:
            data = self._differential_text(ctx, token).encode("utf-8")
        if len(data) > capacity:
            return None
        return data

    def _differential_text(self, ctx: TransformersContext, token: int) -> str:
        tokenizer = ctx.model.tokenizer
        prefix = [ctx.last_token] if ctx.last_token is not None else []

        # Decoding the token after its predecessor keeps leading spaces that
        # tokenizers strip from a lone token
        prefix_text = tokenizer.decode(
            prefix, skip_special_tokens=False, clean_up_tokenization_spaces=False
        )
        full_text = tokenizer.decode(
            prefix + [token], skip_special_tokens=False, clean_up_tokenization_spaces=False
        )
        if full_text.startswith(prefix_text):
            return full_text[len(prefix_text):]
        return tokenizer.decode(
            [token], skip_special_tokens=False, clean_up_tokenization_spaces=False
        )

    def is_eos(self, ctx: TransformersContext, token: int) -> bool:
        return token in ctx.model.eos_token_ids

    def max_token_bytes(self, model: TransformersModel) -> int:
        return model.max_token_bytes
