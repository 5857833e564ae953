"""Inference backend surface and its llama.cpp implementation.

The session engine only talks to a :class:`Backend`: load once, then
tokenize, look up token pieces and attributes, decode batches and sample
through a :class:`SamplerChain`. :class:`LlamaCppBackend` implements that
surface on top of the low-level ctypes bindings shipped with
``llama-cpp-python``.
"""

from __future__ import annotations

import ctypes
import logging
import os
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, NamedTuple

import llama_cpp.llama_cpp as llama_cpp

from .config import LlamaConfig
from .sampling import SamplerStage
from .templates import render_template

# Special value meaning "offload all layers to GPU"
_ALL_GPU_LAYERS_SENTINEL = 1_000_000
# llama.cpp maps this seed to a random one
_DEFAULT_SEED = 0xFFFFFFFF

_backend_lock = threading.Lock()
_backend_initialized = False


class BatchEntry(NamedTuple):
    """One token submitted to :meth:`Backend.decode`."""

    token: int
    pos: int
    logits: bool


class SamplerChain(ABC):
    """An ordered sampler chain built by a backend."""

    @abstractmethod
    def sample(self) -> int:
        """Pick the next token from the last decoded logits."""

    @abstractmethod
    def accept(self, token: int) -> None:
        """Record ``token`` as accepted (repetition-penalty history)."""

    @abstractmethod
    def close(self) -> None:
        """Free the chain. Must be safe to call more than once."""


class Backend(ABC):
    """Capability surface the session engine needs from an inference runtime.

    Implementations raise :class:`RuntimeError` when a primitive fails; the
    session translates those into its own error types.
    """

    @abstractmethod
    def n_ctx(self) -> int: ...

    @abstractmethod
    def n_vocab(self) -> int: ...

    @abstractmethod
    def tokenize(self, text: str, add_special: bool) -> list[int]: ...

    @abstractmethod
    def token_to_piece(self, token: int) -> bytes: ...

    @abstractmethod
    def is_eog(self, token: int) -> bool: ...

    @abstractmethod
    def is_control(self, token: int) -> bool: ...

    @abstractmethod
    def decode(self, batch: Sequence[BatchEntry]) -> None: ...

    @abstractmethod
    def create_sampler(self, stages: Sequence[SamplerStage]) -> SamplerChain: ...

    @abstractmethod
    def clear_memory(self) -> None:
        """Clear the KV cache."""

    @abstractmethod
    def chat_template(self) -> str | None:
        """Return the model's chat template, or None when it has none."""

    @abstractmethod
    def apply_chat_template(
        self,
        template: str,
        messages: Sequence[tuple[str, str]],
        add_generation_prompt: bool = True,
    ) -> str: ...

    @abstractmethod
    def metadata(self) -> dict[str, str]: ...

    @abstractmethod
    def desc(self) -> str: ...

    @abstractmethod
    def model_size(self) -> int: ...

    @abstractmethod
    def n_params(self) -> int: ...

    @abstractmethod
    def close(self) -> None:
        """Free context and model. Must be safe to call more than once."""


def _ensure_backend_init() -> None:
    global _backend_initialized
    if _backend_initialized:
        return
    with _backend_lock:
        if _backend_initialized:
            return
        llama_cpp.llama_backend_init()
        _backend_initialized = True


def backend_free() -> None:
    """Release llama.cpp global backend state if it was initialised."""
    global _backend_initialized
    with _backend_lock:
        if not _backend_initialized:
            return
        llama_cpp.llama_backend_free()
        _backend_initialized = False


# ---------------------------------------------------------------------------
# Sampler chain
# ---------------------------------------------------------------------------


def _seed(value: int) -> int:
    return _DEFAULT_SEED if value < 0 else value & 0xFFFFFFFF


_SAMPLER_FACTORIES: dict[str, Any] = {
    "penalties": lambda last_n, repeat, freq, present: llama_cpp.llama_sampler_init_penalties(
        last_n, repeat, freq, present
    ),
    "top_k": lambda k: llama_cpp.llama_sampler_init_top_k(k),
    "top_p": lambda p, min_keep: llama_cpp.llama_sampler_init_top_p(p, min_keep),
    "min_p": lambda p, min_keep: llama_cpp.llama_sampler_init_min_p(p, min_keep),
    "temp": lambda t: llama_cpp.llama_sampler_init_temp(t),
    "dist": lambda seed: llama_cpp.llama_sampler_init_dist(_seed(seed)),
    "mirostat": lambda n_vocab, seed, tau, eta, m: llama_cpp.llama_sampler_init_mirostat(
        n_vocab, _seed(seed), tau, eta, m
    ),
    "mirostat_v2": lambda seed, tau, eta: llama_cpp.llama_sampler_init_mirostat_v2(
        _seed(seed), tau, eta
    ),
}


class LlamaCppSamplerChain(SamplerChain):
    """``llama_sampler`` chain bound to one context."""

    def __init__(self, ctx: Any, stages: Sequence[SamplerStage]) -> None:
        self._ctx = ctx
        self._chain = llama_cpp.llama_sampler_chain_init(
            llama_cpp.llama_sampler_chain_default_params()
        )
        if not self._chain:
            raise RuntimeError("Failed to create sampler chain")
        try:
            for stage in stages:
                factory = _SAMPLER_FACTORIES.get(stage.name)
                if factory is None:
                    raise RuntimeError(f"Unknown sampler stage '{stage.name}'")
                smpl = factory(**stage.args)
                if not smpl:
                    raise RuntimeError(f"Failed to create sampler '{stage.name}'")
                # The chain takes ownership of smpl
                llama_cpp.llama_sampler_chain_add(self._chain, smpl)
        except Exception:
            self.close()
            raise

    def sample(self) -> int:
        if not self._chain:
            raise RuntimeError("Sampler chain has been freed")
        return int(llama_cpp.llama_sampler_sample(self._chain, self._ctx, -1))

    def accept(self, token: int) -> None:
        # llama_sampler_sample() already accepted the token into the chain;
        # accepting again would count it twice in the penalty history.
        pass

    def close(self) -> None:
        if getattr(self, "_chain", None):
            llama_cpp.llama_sampler_free(self._chain)
        self._chain = None


# ---------------------------------------------------------------------------
# Model + context
# ---------------------------------------------------------------------------


class LlamaCppBackend(Backend):
    """Model, context and vocabulary loaded through llama.cpp."""

    def __init__(self, config: LlamaConfig) -> None:
        self.config = config
        self.model: Any = None
        self.ctx: Any = None
        self.vocab: Any = None
        self._metadata_cache: dict[str, str] | None = None

        if not os.path.exists(config.model_path):
            raise RuntimeError(f"Model path does not exist: {config.model_path}")

        _ensure_backend_init()

        model_params = llama_cpp.llama_model_default_params()
        model_params.n_gpu_layers = (
            config.n_gpu_layers if config.n_gpu_layers >= 0 else _ALL_GPU_LAYERS_SENTINEL
        )
        model_params.use_mmap = config.use_mmap
        model_params.use_mlock = config.use_mlock

        logging.debug(f"Loading model {config.model_path}")
        model = llama_cpp.llama_model_load_from_file(
            config.model_path.encode("utf-8"), model_params
        )
        if not model:
            raise RuntimeError(f"Failed to load model from file: {config.model_path}")

        n_threads = int(config.n_threads or os.cpu_count() or 1)
        ctx_params = llama_cpp.llama_context_default_params()
        ctx_params.n_ctx = int(config.n_ctx)
        # Ingestion submits the whole prompt in one decode call
        ctx_params.n_batch = int(config.n_ctx)
        ctx_params.n_ubatch = int(min(config.n_ubatch, config.n_ctx))
        ctx_params.n_threads = n_threads
        ctx_params.n_threads_batch = int(config.n_threads_batch or n_threads)

        ctx = llama_cpp.llama_init_from_model(model, ctx_params)
        if not ctx:
            llama_cpp.llama_model_free(model)
            raise RuntimeError("Failed to create context with model")

        vocab = llama_cpp.llama_model_get_vocab(model)
        if not vocab:
            llama_cpp.llama_free(ctx)
            llama_cpp.llama_model_free(model)
            raise RuntimeError(f"Failed to get vocab from model: {config.model_path}")

        self.model = model
        self.ctx = ctx
        self.vocab = vocab

    def close(self) -> None:
        # Context before model (the context references the weights)
        if self.ctx is not None:
            llama_cpp.llama_free(self.ctx)
            self.ctx = None
        if self.model is not None:
            llama_cpp.llama_model_free(self.model)
            self.model = None
        self.vocab = None

    # Vocabulary --------------------------------------------------------------
    def n_ctx(self) -> int:
        return int(llama_cpp.llama_n_ctx(self.ctx))

    def n_vocab(self) -> int:
        return int(llama_cpp.llama_vocab_n_tokens(self.vocab))

    def tokenize(self, text: str, add_special: bool) -> list[int]:
        data = text.encode("utf-8")
        n_alloc = len(data) + 2
        tokens = (llama_cpp.llama_token * n_alloc)()
        n = llama_cpp.llama_tokenize(
            self.vocab, data, len(data), tokens, n_alloc, add_special, False
        )
        if n < 0:
            # Negative return is the required buffer size
            n_alloc = -n
            tokens = (llama_cpp.llama_token * n_alloc)()
            n = llama_cpp.llama_tokenize(
                self.vocab, data, len(data), tokens, n_alloc, add_special, False
            )
            if n < 0:
                raise RuntimeError(f"Failed to tokenize text (n_tokens={n})")
        return list(tokens[:n])

    def token_to_piece(self, token: int, special: bool = False) -> bytes:
        size = 32
        buf = (ctypes.c_char * size)()
        n = llama_cpp.llama_token_to_piece(self.vocab, token, buf, size, 0, special)
        if n < 0:
            size = -n
            buf = (ctypes.c_char * size)()
            n = llama_cpp.llama_token_to_piece(self.vocab, token, buf, size, 0, special)
            if n < 0:
                raise RuntimeError(f"Failed to get piece for token {token}")
        return bytes(buf[:n])

    def is_eog(self, token: int) -> bool:
        return bool(llama_cpp.llama_vocab_is_eog(self.vocab, token))

    def is_control(self, token: int) -> bool:
        attr = llama_cpp.llama_vocab_get_attr(self.vocab, token)
        return bool(attr & llama_cpp.LLAMA_TOKEN_ATTR_CONTROL)

    # Context -----------------------------------------------------------------
    def decode(self, batch: Sequence[BatchEntry]) -> None:
        n_tokens = len(batch)
        if n_tokens == 0:
            raise RuntimeError("Cannot decode an empty batch")
        native = llama_cpp.llama_batch_init(n_tokens, 0, 1)
        try:
            for i, entry in enumerate(batch):
                native.token[i] = entry.token
                native.pos[i] = entry.pos
                native.n_seq_id[i] = 1
                native.seq_id[i][0] = 0
                native.logits[i] = entry.logits
            native.n_tokens = n_tokens
            rc = llama_cpp.llama_decode(self.ctx, native)
        finally:
            llama_cpp.llama_batch_free(native)
        if rc != 0:
            raise RuntimeError(f"llama_decode returned {rc}")

    def create_sampler(self, stages: Sequence[SamplerStage]) -> SamplerChain:
        return LlamaCppSamplerChain(self.ctx, stages)

    def clear_memory(self) -> None:
        if hasattr(llama_cpp, "llama_memory_clear"):
            llama_cpp.llama_memory_clear(llama_cpp.llama_get_memory(self.ctx), True)
        else:
            llama_cpp.llama_kv_self_clear(self.ctx)

    # Chat templates ----------------------------------------------------------
    def chat_template(self) -> str | None:
        return self.metadata().get("tokenizer.chat_template") or None

    def apply_chat_template(
        self,
        template: str,
        messages: Sequence[tuple[str, str]],
        add_generation_prompt: bool = True,
    ) -> str:
        """Format messages with llama.cpp's built-in template detection.

        Templates llama.cpp does not recognise are rendered with Jinja.
        """
        encoded = [(r.encode("utf-8"), c.encode("utf-8")) for r, c in messages]
        chat = (llama_cpp.llama_chat_message * len(encoded))()
        for i, (role, content) in enumerate(encoded):
            chat[i].role = role
            chat[i].content = content
        tmpl = template.encode("utf-8")

        n = llama_cpp.llama_chat_apply_template(
            tmpl, chat, len(encoded), add_generation_prompt, None, 0
        )
        if n < 0:
            logging.debug("Chat template not recognised by llama.cpp, using Jinja")
            return render_template(
                template,
                messages,
                add_generation_prompt=add_generation_prompt,
                bos_token=self._special_text(llama_cpp.llama_vocab_bos(self.vocab)),
                eos_token=self._special_text(llama_cpp.llama_vocab_eos(self.vocab)),
            )
        buf = ctypes.create_string_buffer(n + 1)
        n = llama_cpp.llama_chat_apply_template(
            tmpl, chat, len(encoded), add_generation_prompt, buf, n + 1
        )
        if n < 0:
            raise RuntimeError("Template application failed")
        return buf.raw[:n].decode("utf-8", errors="replace")

    def _special_text(self, token: int) -> str:
        if token < 0:
            return ""
        return self.token_to_piece(token, special=True).decode("utf-8", errors="replace")

    # Model info --------------------------------------------------------------
    def metadata(self) -> dict[str, str]:
        if self._metadata_cache is None:
            result: dict[str, str] = {}
            size = 16384
            buf = ctypes.create_string_buffer(size)
            for i in range(llama_cpp.llama_model_meta_count(self.model)):
                n = llama_cpp.llama_model_meta_key_by_index(self.model, i, buf, size)
                if n <= 0:
                    continue
                key = buf.value.decode("utf-8", errors="replace")
                n = llama_cpp.llama_model_meta_val_str_by_index(self.model, i, buf, size)
                if n >= size:
                    # Value did not fit (large chat templates)
                    big = ctypes.create_string_buffer(n + 1)
                    llama_cpp.llama_model_meta_val_str_by_index(self.model, i, big, n + 1)
                    value = big.value
                else:
                    value = buf.value if n >= 0 else b""
                result[key] = value.decode("utf-8", errors="replace")
            self._metadata_cache = result
        return self._metadata_cache

    def desc(self) -> str:
        buf = ctypes.create_string_buffer(256)
        llama_cpp.llama_model_desc(self.model, buf, 256)
        return buf.value.decode("utf-8", errors="replace")

    def model_size(self) -> int:
        return int(llama_cpp.llama_model_size(self.model))

    def n_params(self) -> int:
        return int(llama_cpp.llama_model_n_params(self.model))


# Logging helpers ------------------------------------------------------------

# llama-cpp-python forwards native llama.cpp/ggml logs to this logger
_NATIVE_LOGGER = "llama-cpp-python"

_LEVEL_MAP = {
    "none": logging.CRITICAL + 1,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def set_log_level(level: str | int) -> None:
    """Set minimum level for llama.cpp's native log output."""
    if isinstance(level, str):
        key = level.lower()
        if key not in _LEVEL_MAP:
            raise ValueError(f"Unknown log level '{level}'")
        level_int = _LEVEL_MAP[key]
    else:
        level_int = int(level)
    logging.getLogger(_NATIVE_LOGGER).setLevel(level_int)


def disable_logging() -> None:
    """Silence llama.cpp logging completely."""
    set_log_level("none")


def reset_logging() -> None:
    """Restore default llama.cpp log level."""
    logging.getLogger(_NATIVE_LOGGER).setLevel(logging.NOTSET)


def print_system_info() -> str:
    """Return llama.cpp's build and hardware feature summary."""
    info = llama_cpp.llama_print_system_info()
    return info.decode("utf-8", errors="replace") if isinstance(info, bytes) else str(info)
