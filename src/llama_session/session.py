"""Stateful inference session over a :class:`~llama_session.backend.Backend`."""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import dataclasses
import enum
import gc
import logging
import queue
import sys
import threading
import time
import weakref
from collections.abc import Generator, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from . import _about
from .backend import Backend, BatchEntry, LlamaCppBackend, SamplerChain, backend_free
from .config import LlamaConfig
from .errors import (
    ContextOverflowError,
    DecodeError,
    GenerationError,
    InvalidHandleError,
    ModelLoadError,
    TemplateRenderError,
    TokenizationError,
    ValidationError,
)
from .ollama import resolve_model_path
from .sampling import SamplingOptions, SamplingParams, build_sampler_stages
from .streaming import Sink, StreamBuffer
from .templates import FALLBACK_CHAT_TEMPLATE, normalize_messages

# ---------------------------------------------------------------------------
# Instance tracking for cleanup at exit
# ---------------------------------------------------------------------------
_instances: set[weakref.ref[Any]] = set()
_shutdown_called = False
_cleanup_registered = False
_cleanup_lock = threading.Lock()

# Hard cap on generated tokens when neither the call nor the session sets one
DEFAULT_MAX_TOKENS = 4096
_MAX_PROMPT_LENGTH = 10_000_000  # Maximum prompt length in characters (10MB limit)


def _register_cleanup() -> None:
    """Register the exit handler once, after the first session is ready."""
    global _cleanup_registered
    if _cleanup_registered:
        return
    with _cleanup_lock:
        if _cleanup_registered:
            return
        atexit.register(_cleanup_all)
        _cleanup_registered = True


def _cleanup_all() -> None:
    """Close all sessions before interpreter shutdown."""
    global _shutdown_called
    with _cleanup_lock:
        if _shutdown_called:
            return
        _shutdown_called = True
    # Close outside the lock; close() never takes it
    for ref in list(_instances):
        instance = ref()
        if instance is not None:
            with contextlib.suppress(Exception):
                instance.close()
    _instances.clear()
    gc.collect()
    with contextlib.suppress(Exception):
        backend_free()


def shutdown() -> None:
    """Close every live session and free llama.cpp backend resources.

    Call this at the end of your program to release native memory before
    Python's own shutdown sequence runs.

    Example:
        from llama_session import Session, shutdown

        def main():
            with Session("model.gguf") as session:
                ...
            shutdown()
    """
    _cleanup_all()


def version() -> dict[str, str]:
    """Return the package version and edition."""
    return {"version": _about.__version__, "edition": _about.__edition__}


class StreamClosed(Exception):
    """Raised inside the streaming sink once the consumer stops iterating."""


class SessionState(enum.Enum):
    CREATED = "created"
    READY = "ready"
    GENERATING = "generating"
    RELEASED = "released"


@dataclass
class Telemetry:
    """Timings and token counts of the most recent ingestion and generation."""

    ingest_ms: float = 0.0
    generate_ms: float = 0.0
    tokens_ingested: int = 0
    tokens_generated: int = 0

    def reset(self) -> None:
        self.ingest_ms = 0.0
        self.generate_ms = 0.0
        self.tokens_ingested = 0
        self.tokens_generated = 0

    def to_dict(self) -> dict[str, float | int]:
        ingest_tps = (
            self.tokens_ingested / (self.ingest_ms / 1000.0) if self.ingest_ms > 0 else 0.0
        )
        generate_tps = (
            self.tokens_generated / (self.generate_ms / 1000.0)
            if self.generate_ms > 0
            else 0.0
        )
        return {
            "ingest_ms": self.ingest_ms,
            "generate_ms": self.generate_ms,
            "tokens_ingested": self.tokens_ingested,
            "tokens_generated": self.tokens_generated,
            "ingest_tps": ingest_tps,
            "generate_tps": generate_tps,
        }


class Session:
    """A loaded model with a persistent context that grows across calls.

    Each :meth:`generate` continues where the previous call stopped unless
    ``reset=True`` is passed; :meth:`chat` always starts from an empty
    context. Generated text is returned whole and, when a callback is given,
    also streamed to it in boundary-safe fragments.

    **NOT THREAD-SAFE**: do not call sync methods on one session from several
    threads. The async methods serialise on an internal lock.

    Supports the context manager protocol:
        with Session("model.gguf") as session:
            text = session.generate("Hello", max_tokens=32)
    """

    def __init__(
        self,
        model_path: str,
        *,
        config: LlamaConfig | None = None,
        sampling: SamplingParams | None = None,
        backend: Backend | None = None,
    ) -> None:
        cfg = config or LlamaConfig(model_path=model_path)
        if sampling is not None and not isinstance(sampling, SamplingParams):
            raise ValidationError("sampling must be a SamplingParams instance")
        params = (sampling or SamplingParams()).clamped()
        self.config = cfg
        self.state = SessionState.CREATED
        self.telemetry = Telemetry()
        self.verbose = cfg.verbose
        self._position = 0
        self._lock = threading.Lock()  # Serialises the async wrappers
        self._chain: SamplerChain | None = None
        self._backend: Backend | None = None

        if backend is None:
            # Accept Ollama model names ("gemma3:1b") for locally pulled models
            resolved = resolve_model_path(cfg.model_path)
            if resolved != cfg.model_path:
                cfg = self.config = dataclasses.replace(cfg, model_path=resolved)
            try:
                backend = LlamaCppBackend(cfg)
            except RuntimeError as e:
                raise ModelLoadError(f"Failed to load model: {cfg.model_path}") from e

        try:
            self._n_ctx = int(backend.n_ctx())
            self._n_vocab = int(backend.n_vocab())
            chain = backend.create_sampler(build_sampler_stages(params, self._n_vocab))
        except Exception as e:
            # Release whatever the backend already holds
            with contextlib.suppress(Exception):
                backend.close()
            raise ModelLoadError(f"Failed to initialise session: {e}") from e

        self._backend = backend
        self._chain = chain
        self.sampling = params
        self.state = SessionState.READY
        logging.info(f"Session ready: model={cfg.model_path} n_ctx={self._n_ctx}")

        _register_cleanup()
        self._ref = weakref.ref(self, lambda r: _instances.discard(r))
        _instances.add(self._ref)

    def __enter__(self) -> Session:
        return self

    def __exit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        self.close()

    def __del__(self) -> None:
        # Native destructors must not run after interpreter teardown
        if not sys.is_finalizing() and getattr(self, "state", None) in (
            SessionState.READY,
            SessionState.GENERATING,
        ):
            self.close()

    def _check_closed(self) -> None:
        """Raise error if the session has been released."""
        if self.state is SessionState.RELEASED or self._backend is None:
            raise InvalidHandleError("Session has been released")

    def close(self) -> None:
        """Free sampler chain, context and model. Safe to call repeatedly."""
        if getattr(self, "state", SessionState.RELEASED) is SessionState.RELEASED:
            return
        self.state = SessionState.RELEASED
        if hasattr(self, "_ref"):
            _instances.discard(self._ref)
        if self._chain is not None:
            self._chain.close()
            self._chain = None
        if self._backend is not None:
            self._backend.close()
            self._backend = None
        logging.debug(f"Session released: model={self.config.model_path}")

    # Properties --------------------------------------------------------------
    @property
    def position(self) -> int:
        """Number of tokens currently held in the context."""
        return self._position

    @property
    def n_ctx(self) -> int:
        return self._n_ctx

    @property
    def closed(self) -> bool:
        return self.state is SessionState.RELEASED

    def get_context(self) -> int:
        self._check_closed()
        return self._position

    # Configuration -----------------------------------------------------------
    def configure(
        self, options: SamplingOptions | Mapping[str, Any] | None = None
    ) -> SamplingParams:
        """Merge ``options`` into the sampling parameters and rebuild the chain.

        The new chain is built before the old one is freed; if building
        fails the previous chain and parameters remain in effect.

        Returns:
            The clamped parameters now in effect.
        """
        self._check_closed()
        params = self.sampling.merge(options)
        try:
            chain = self._backend.create_sampler(
                build_sampler_stages(params, self._n_vocab)
            )
        except RuntimeError as e:
            raise GenerationError(f"Failed to build sampler chain: {e}") from e
        old, self._chain = self._chain, chain
        self.sampling = params
        if old is not None:
            old.close()
        logging.debug(f"Sampler reconfigured: {params}")
        return params

    # Tokenization ------------------------------------------------------------
    def tokenize(self, text: str, *, add_special: bool = True) -> list[int]:
        """Convert text to token ids (special tokens added by default)."""
        self._check_closed()
        if not isinstance(text, str):
            raise ValidationError("text must be a string")
        try:
            return list(self._backend.tokenize(text, add_special))
        except RuntimeError as e:
            raise TokenizationError(f"Failed to tokenize text: {e}") from e

    def detokenize(self, tokens: Iterable[int]) -> str:
        """Concatenate the text pieces of ``tokens``."""
        self._check_closed()
        data = bytearray()
        try:
            for token in tokens:
                data += self._backend.token_to_piece(int(token))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"tokens must be integers: {e}") from e
        except RuntimeError as e:
            raise TokenizationError(f"Failed to detokenize: {e}") from e
        return bytes(data).decode("utf-8", errors="replace")

    # Session state -----------------------------------------------------------
    def clear_session(self) -> None:
        """Empty the context and zero the telemetry."""
        self._check_closed()
        self._reset_context()
        self.telemetry.reset()

    def _reset_context(self) -> None:
        self._position = 0
        try:
            self._backend.clear_memory()
        except RuntimeError as e:
            raise GenerationError(f"Failed to clear KV cache: {e}") from e

    def info(self) -> dict[str, Any]:
        """Describe context usage, the model, sampling and telemetry."""
        self._check_closed()
        backend = self._backend
        return {
            "n_ctx": self._n_ctx,
            "n_past": self._position,
            "n_ctx_used": self._position,
            "n_ctx_available": self._n_ctx - self._position,
            "model_desc": backend.desc(),
            "n_vocab": self._n_vocab,
            "model_size": backend.model_size(),
            "model_n_params": backend.n_params(),
            "metadata": dict(backend.metadata()),
            "sampling": self.sampling.to_dict(),
            "telemetry": self.telemetry.to_dict(),
        }

    # Ingestion ---------------------------------------------------------------
    def _ingest(self, tokens: Sequence[int]) -> None:
        """Decode ``tokens`` at the current position in a single batch."""
        n_tokens = len(tokens)
        if n_tokens == 0:
            raise ValidationError("prompt produced no tokens")
        if self._position + n_tokens >= self._n_ctx:
            logging.warning(
                f"Context overflow: n_past={self._position} n_tok={n_tokens} "
                f"n_ctx={self._n_ctx}"
            )
            raise ContextOverflowError(self._position, n_tokens, self._n_ctx)

        batch = [
            BatchEntry(int(token), self._position + i, i == n_tokens - 1)
            for i, token in enumerate(tokens)
        ]
        start = time.perf_counter()
        try:
            self._backend.decode(batch)
        except RuntimeError as e:
            logging.error(f"Prompt decode failed at n_past={self._position}: {e}")
            raise DecodeError(f"Failed to decode prompt: {e}") from e
        finally:
            self.telemetry.ingest_ms = (time.perf_counter() - start) * 1000.0
            self.telemetry.tokens_ingested = n_tokens
        self._position += n_tokens

    def _prepare_prompt(
        self, prompt: str, reset: bool, system: str | None
    ) -> list[int]:
        if not isinstance(prompt, str):
            raise ValidationError("prompt must be a string")
        if len(prompt) > _MAX_PROMPT_LENGTH:
            raise ValidationError(
                f"prompt exceeds maximum length of {_MAX_PROMPT_LENGTH} characters"
            )
        if system is not None and not isinstance(system, str):
            raise ValidationError("system must be a string")
        if reset:
            self._reset_context()
        if system and self._position == 0:
            prompt = f"{system}\n\n{prompt}"
        # BOS only at the start of a fresh context
        try:
            return list(self._backend.tokenize(prompt, self._position == 0))
        except RuntimeError as e:
            raise TokenizationError(f"Failed to tokenize prompt: {e}") from e

    def _prepare_chat(self, messages: Sequence[Any]) -> list[int]:
        if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence):
            raise ValidationError("messages must be a sequence of messages")
        try:
            pairs = normalize_messages(messages)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid chat message: {e}") from e
        if not pairs:
            raise ValidationError("messages must not be empty")

        template = self._backend.chat_template() or FALLBACK_CHAT_TEMPLATE
        try:
            text = self._backend.apply_chat_template(template, pairs, True)
        except RuntimeError as e:
            raise TemplateRenderError(f"Failed to apply chat template: {e}") from e

        try:
            return list(self._backend.tokenize(text, True))
        except RuntimeError as e:
            raise TokenizationError(f"Failed to tokenize chat prompt: {e}") from e

    # Generation --------------------------------------------------------------
    @contextlib.contextmanager
    def _generating(self) -> Iterator[None]:
        self._check_closed()
        if self.state is SessionState.GENERATING:
            raise GenerationError("Session is already generating")
        self.state = SessionState.GENERATING
        try:
            yield
        finally:
            if self.state is SessionState.GENERATING:
                self.state = SessionState.READY

    def generate(
        self,
        prompt: str,
        *,
        callback: Sink | None = None,
        reset: bool = False,
        system: str | None = None,
        stop_ids: Iterable[int] | None = None,
        max_tokens: int | None = None,
        options: SamplingOptions | Mapping[str, Any] | None = None,
        markers: Iterable[str] | None = None,
    ) -> str:
        """Continue the context with ``prompt`` and generate a reply.

        Args:
            prompt: Text appended to the current context.
            callback: Receives each text fragment as soon as it is safe to emit.
            reset: Empty the context before ingesting.
            system: Prepended to the prompt when the context is empty.
            stop_ids: Extra token ids that end generation.
            max_tokens: Budget for this call only.
            options: Sampling options applied (persistently) before ingestion.
            markers: Textual end markers for this call instead of the
                configured ones.

        Returns:
            The generated text, identical to the concatenated callback fragments.

        Raises:
            ContextOverflowError: The prompt does not fit; position is unchanged.
            DecodeError: The backend failed to decode.
            SinkError: The callback raised; its exception is the cause.
        """
        with self._generating():
            if options:
                self.configure(options)
            tokens = self._prepare_prompt(prompt, reset, system)
            self._ingest(tokens)
            return self._run_generation(callback, stop_ids, max_tokens, markers)

    def chat(
        self,
        messages: Sequence[Mapping[str, Any] | tuple[str, str]],
        *,
        callback: Sink | None = None,
        stop_ids: Iterable[int] | None = None,
        max_tokens: int | None = None,
        options: SamplingOptions | Mapping[str, Any] | None = None,
        markers: Iterable[str] | None = None,
    ) -> str:
        """Render ``messages`` with the model's chat template and reply.

        The context is always emptied first, so each call is stateless.
        """
        with self._generating():
            self._reset_context()
            if options:
                self.configure(options)
            tokens = self._prepare_chat(messages)
            self._ingest(tokens)
            return self._run_generation(callback, stop_ids, max_tokens, markers)

    def _token_budget(self, max_tokens: int | None) -> int:
        if max_tokens is not None:
            if isinstance(max_tokens, bool) or not isinstance(max_tokens, int):
                raise ValidationError("max_tokens must be an integer")
            if max_tokens > 0:
                return max_tokens
        if self.sampling.num_predict > 0:
            return self.sampling.num_predict
        return DEFAULT_MAX_TOKENS

    def _run_generation(
        self,
        callback: Sink | None,
        stop_ids: Iterable[int] | None,
        max_tokens: int | None,
        markers: Iterable[str] | None,
    ) -> str:
        budget = self._token_budget(max_tokens)
        try:
            stops = frozenset(int(t) for t in stop_ids or ())
        except (TypeError, ValueError) as e:
            raise ValidationError(f"stop_ids must be integers: {e}") from e
        buffer = StreamBuffer(
            self.config.end_markers if markers is None else markers, callback
        )
        backend = self._backend
        chain = self._chain
        n_generated = 0
        start = time.perf_counter()
        try:
            for _ in range(budget):
                if self._position >= self._n_ctx:
                    logging.debug(f"Context full at n_past={self._position}")
                    break
                try:
                    token = chain.sample()
                except RuntimeError as e:
                    raise GenerationError(f"Sampling failed: {e}") from e
                chain.accept(token)

                is_eog = backend.is_eog(token)
                is_control = backend.is_control(token)
                if self.verbose:
                    logging.info(
                        f"token={token} piece={self._piece(token)!r} "
                        f"eog={is_eog} control={is_control}"
                    )
                if is_eog or is_control or token in stops:
                    break

                if buffer.feed(self._piece(token)):
                    logging.debug(f"End marker {buffer.marker_found!r} in generated text")
                    return buffer.text
                # The callback may have released the session
                self._check_closed()

                try:
                    backend.decode([BatchEntry(token, self._position, True)])
                except RuntimeError as e:
                    buffer.discard()
                    logging.error(f"Decode failed during generation: {e}")
                    raise DecodeError(f"Decode failed during generation: {e}") from e
                self._position += 1
                n_generated += 1

            buffer.finish()
            return buffer.text
        finally:
            self.telemetry.generate_ms = (time.perf_counter() - start) * 1000.0
            self.telemetry.tokens_generated = n_generated

    def _piece(self, token: int) -> bytes:
        try:
            return self._backend.token_to_piece(token)
        except RuntimeError as e:
            raise GenerationError(f"Failed to convert token {token}: {e}") from e

    # Streaming ---------------------------------------------------------------
    def generate_stream(self, prompt: str, **kwargs: Any) -> Generator[str, None, None]:
        """Yield fragments of :meth:`generate` as they are produced.

        Generation runs in a background thread. Closing the generator early
        stops generation at the next emitted fragment and waits for the
        worker, so the session is ready again when ``close()`` returns.
        """
        return self._stream(self.generate, prompt, kwargs)

    def chat_stream(
        self, messages: Sequence[Any], **kwargs: Any
    ) -> Generator[str, None, None]:
        """Yield fragments of :meth:`chat` as they are produced."""
        return self._stream(self.chat, messages, kwargs)

    def _stream(
        self, method: Any, arg: Any, kwargs: dict[str, Any]
    ) -> Generator[str, None, None]:
        self._check_closed()
        if "callback" in kwargs:
            raise ValidationError("callback cannot be combined with streaming")
        fragment_queue: queue.Queue[str | None | BaseException] = queue.Queue()
        cancelled = threading.Event()

        def sink(fragment: str) -> None:
            if cancelled.is_set():
                raise StreamClosed("stream closed by consumer")
            fragment_queue.put(fragment)

        def worker() -> None:
            """Background thread that runs generation and feeds the queue."""
            try:
                method(arg, callback=sink, **kwargs)
                fragment_queue.put(None)  # Sentinel: generation complete
            except BaseException as e:
                fragment_queue.put(e)  # Propagate exception to consumer

        thread = threading.Thread(target=worker, daemon=True)
        thread.start()

        def consume() -> Generator[str, None, None]:
            try:
                while True:
                    item = fragment_queue.get()
                    if item is None:
                        break
                    if isinstance(item, BaseException):
                        raise item
                    yield item
            finally:
                cancelled.set()
                # Session is READY again once close() returns
                thread.join()

        return consume()

    # Async API (thread-safe wrappers) ----------------------------------------
    # Concurrent coroutines on one session run one at a time.

    def _generate_locked(self, prompt: str, **kwargs: Any) -> str:
        """Thread-safe wrapper for generate()."""
        with self._lock:
            return self.generate(prompt, **kwargs)

    def _chat_locked(self, messages: Sequence[Any], **kwargs: Any) -> str:
        """Thread-safe wrapper for chat()."""
        with self._lock:
            return self.chat(messages, **kwargs)

    async def generate_async(self, prompt: str, **kwargs: Any) -> str:
        """Async version of generate(). Runs in a worker thread."""
        return await asyncio.to_thread(self._generate_locked, prompt, **kwargs)

    async def chat_async(self, messages: Sequence[Any], **kwargs: Any) -> str:
        """Async version of chat(). Runs in a worker thread."""
        return await asyncio.to_thread(self._chat_locked, messages, **kwargs)
