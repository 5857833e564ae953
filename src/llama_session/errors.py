"""Exception hierarchy for llama-session."""

from __future__ import annotations


class LlamaError(Exception):
    """Base exception for llama-session errors."""


class InvalidHandleError(LlamaError):
    """Operation on a released session or an unknown/stale handle."""


class ModelLoadError(LlamaError):
    """Failed to load model file or create its inference context."""


class ValidationError(LlamaError):
    """Invalid input parameters."""


class TokenizationError(LlamaError):
    """Text could not be converted to tokens."""


class TemplateRenderError(LlamaError):
    """Chat messages could not be rendered through the chat template."""


class ContextOverflowError(LlamaError):
    """Ingesting the prompt would exceed the context window."""

    def __init__(self, position: int, n_tokens: int, n_ctx: int) -> None:
        super().__init__(
            f"Context overflow: n_past={position} + n_tok={n_tokens} >= n_ctx={n_ctx}"
        )
        self.position = position
        self.n_tokens = n_tokens
        self.n_ctx = n_ctx


class GenerationError(LlamaError):
    """Text generation failed."""


class DecodeError(GenerationError):
    """The backend rejected a decode batch."""


class SinkError(GenerationError):
    """The streaming callback raised while receiving a fragment.

    The callback's own exception is available as ``__cause__``.
    """


class ModelNotFoundError(LlamaError):
    """A model name is not present in the local store or the registry."""


class DownloadError(LlamaError):
    """A registry request or blob transfer failed."""


class DigestMismatchError(DownloadError):
    """A blob's SHA-256 digest or size does not match its manifest entry."""
