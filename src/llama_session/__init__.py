"""llama_session package initializer.

A persistent llama.cpp inference session: the context survives between
calls, and generated text is streamed in fragments that never split a UTF-8
character or leak a partial end-of-turn tag.
"""

from __future__ import annotations

from . import api
from ._about import __edition__, __version__
from .backend import (
    Backend,
    BatchEntry,
    LlamaCppBackend,
    SamplerChain,
    disable_logging,
    print_system_info,
    reset_logging,
    set_log_level,
)
from .config import LlamaConfig
from .errors import (
    ContextOverflowError,
    DecodeError,
    DigestMismatchError,
    DownloadError,
    GenerationError,
    InvalidHandleError,
    LlamaError,
    ModelLoadError,
    ModelNotFoundError,
    SinkError,
    TemplateRenderError,
    TokenizationError,
    ValidationError,
)
from .ollama import ModelStore, parse_model_name, resolve_model_path
from .registry import Handle, SessionTable
from .sampling import SamplerStage, SamplingOptions, SamplingParams, build_sampler_stages
from .session import DEFAULT_MAX_TOKENS, Session, SessionState, Telemetry, shutdown, version
from .streaming import DEFAULT_END_MARKERS, StreamBuffer

__all__ = [
    "Session",
    "SessionState",
    "Telemetry",
    "LlamaConfig",
    "SamplingOptions",
    "SamplingParams",
    "SamplerStage",
    "build_sampler_stages",
    "StreamBuffer",
    "DEFAULT_END_MARKERS",
    "DEFAULT_MAX_TOKENS",
    "Backend",
    "BatchEntry",
    "SamplerChain",
    "LlamaCppBackend",
    "Handle",
    "SessionTable",
    "ModelStore",
    "parse_model_name",
    "resolve_model_path",
    "api",
    "set_log_level",
    "disable_logging",
    "reset_logging",
    "print_system_info",
    "LlamaError",
    "InvalidHandleError",
    "ModelLoadError",
    "ValidationError",
    "TokenizationError",
    "TemplateRenderError",
    "ContextOverflowError",
    "GenerationError",
    "DecodeError",
    "SinkError",
    "ModelNotFoundError",
    "DownloadError",
    "DigestMismatchError",
    "shutdown",
    "version",
    "__version__",
    "__edition__",
]
