"""Handle-based functional surface.

Every function takes the opaque :class:`~llama_session.registry.Handle`
returned by :func:`create`, for hosts that cannot hold Python objects
directly.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from .backend import Backend
from .config import LlamaConfig
from .ollama import ModelStore
from .registry import Handle, SessionTable
from .sampling import SamplingOptions, SamplingParams
from .session import Session
from .session import version as _version
from .streaming import Sink

_table = SessionTable()


def create(
    model_path: str,
    n_ctx: int = 4096,
    *,
    sampling: SamplingParams | None = None,
    backend: Backend | None = None,
    **kwargs: Any,
) -> Handle:
    """Load ``model_path`` and return a handle to the new session.

    Extra keyword arguments are :class:`LlamaConfig` fields. A ready-made
    ``backend`` may be supplied instead of loading through llama.cpp.
    """
    config = LlamaConfig(model_path=model_path, n_ctx=n_ctx, **kwargs)
    session = Session(model_path, config=config, sampling=sampling, backend=backend)
    handle = _table.add(session)
    logging.debug(f"Created session {handle}")
    return handle


def release(handle: Handle) -> None:
    """Free the session; ``handle`` and any copy of it become invalid."""
    s = _table.remove(handle)
    s.close()


def session(handle: Handle) -> Session:
    """Return the :class:`Session` behind ``handle``."""
    return _table.get(handle)


def configure(
    handle: Handle, options: SamplingOptions | Mapping[str, Any] | None = None
) -> dict[str, Any]:
    return _table.get(handle).configure(options).to_dict()


def generate(
    handle: Handle,
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
    return _table.get(handle).generate(
        prompt,
        callback=callback,
        reset=reset,
        system=system,
        stop_ids=stop_ids,
        max_tokens=max_tokens,
        options=options,
        markers=markers,
    )


def chat(
    handle: Handle,
    messages: Sequence[Any],
    *,
    callback: Sink | None = None,
    stop_ids: Iterable[int] | None = None,
    max_tokens: int | None = None,
    options: SamplingOptions | Mapping[str, Any] | None = None,
    markers: Iterable[str] | None = None,
) -> str:
    return _table.get(handle).chat(
        messages,
        callback=callback,
        stop_ids=stop_ids,
        max_tokens=max_tokens,
        options=options,
        markers=markers,
    )


def tokenize(handle: Handle, text: str) -> list[int]:
    return _table.get(handle).tokenize(text)


def detokenize(handle: Handle, tokens: Iterable[int]) -> str:
    return _table.get(handle).detokenize(tokens)


def clear_session(handle: Handle) -> None:
    _table.get(handle).clear_session()


def info(handle: Handle) -> dict[str, Any]:
    return _table.get(handle).info()


def get_context(handle: Handle) -> int:
    return _table.get(handle).get_context()


def verbose(handle: Handle, enabled: bool | None = None) -> bool:
    """Return the per-token trace flag, setting it first when ``enabled`` is given."""
    s = _table.get(handle)
    if enabled is not None:
        s.verbose = bool(enabled)
    return s.verbose


def version() -> dict[str, str]:
    return _version()


def pull(name: str, root: str | None = None) -> str:
    """Download an Ollama model (``model[:tag]``) and return its GGUF path."""
    with ModelStore(root) as store:
        return str(store.download_model(name))


def list_models(root: str | None = None) -> list[str]:
    return ModelStore(root).list_local_models()
