"""Session configuration."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ValidationError
from .streaming import DEFAULT_END_MARKERS

MIN_N_CTX = 512
MAX_N_CTX = 32768


@dataclass
class LlamaConfig:
    model_path: str
    n_ctx: int = 4096
    n_ubatch: int = 512
    n_threads: int | None = None
    n_threads_batch: int | None = None
    n_gpu_layers: int = -1
    use_mmap: bool = True
    use_mlock: bool = False
    verbose: bool = False  # per-token trace through logging
    end_markers: tuple[str, ...] = DEFAULT_END_MARKERS

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if not isinstance(self.model_path, str) or not self.model_path:
            raise ValidationError("model_path must be a non-empty string")
        if not MIN_N_CTX <= self.n_ctx <= MAX_N_CTX:
            raise ValidationError(
                f"n_ctx must be between {MIN_N_CTX} and {MAX_N_CTX}"
            )
        if self.n_ubatch < 1:
            raise ValidationError("n_ubatch must be at least 1")
        if self.n_gpu_layers < -1:
            raise ValidationError("n_gpu_layers must be >= -1 (-1 means all layers)")
        self.end_markers = tuple(self.end_markers)
        if not all(isinstance(m, str) and m for m in self.end_markers):
            raise ValidationError("end_markers must be non-empty strings")
