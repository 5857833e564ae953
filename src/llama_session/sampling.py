"""Sampling configuration and sampler-chain construction.

Options arrive from the host as a loose mapping (``{"temperature": 0.7}``),
are parsed once into :class:`SamplingOptions`, merged into the session's
:class:`SamplingParams` and clamped in a single pass. The chain itself is
described as an ordered list of :class:`SamplerStage` records which the
backend turns into native sampler objects.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import ValidationError

# Candidates kept by top-p / min-p regardless of threshold
_MIN_KEEP = 1
# Mirostat v1 estimation window (llama.cpp default)
_MIROSTAT_M = 100

_DEFAULT_MIROSTAT_TAU = 5.0
_DEFAULT_MIROSTAT_ETA = 0.1

_INT_OPTIONS = frozenset(
    {"top_k", "repeat_last_n", "num_predict", "mirostat", "seed"}
)
_OPTION_ALIASES = {"max_tokens": "num_predict"}


@dataclass(frozen=True)
class SamplingOptions:
    """Partial sampling configuration; ``None`` means "leave unchanged"."""

    temperature: float | None = None
    top_k: int | None = None
    top_p: float | None = None
    min_p: float | None = None
    repeat_penalty: float | None = None
    repeat_last_n: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    num_predict: int | None = None
    mirostat: int | None = None
    mirostat_tau: float | None = None
    mirostat_eta: float | None = None
    seed: int | None = None

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | None) -> SamplingOptions:
        """Parse a host-supplied option mapping.

        Values may be numbers or numeric strings. Unknown keys are ignored.

        Raises:
            ValidationError: If a recognised option is not numeric.
        """
        if not options:
            return cls()
        known = {f.name for f in dataclasses.fields(cls)}
        values: dict[str, Any] = {}
        for raw_key, raw_value in options.items():
            key = _OPTION_ALIASES.get(raw_key, raw_key)
            if key not in known:
                logging.warning(f"Ignoring unknown sampling option '{raw_key}'")
                continue
            if raw_value is None:
                continue
            values[key] = _coerce(key, raw_value)
        return cls(**values)


def _coerce(name: str, value: Any) -> int | float:
    if isinstance(value, bool):
        raise ValidationError(f"option '{name}' must be numeric, got {value!r}")
    try:
        if name in _INT_OPTIONS:
            # Accept "40" and 40.0 but not 40.5
            number = float(value)
            if number != int(number):
                raise ValueError(value)
            return int(number)
        number = float(value)
        if math.isnan(number):
            raise ValueError(value)
        return number
    except (TypeError, ValueError, OverflowError) as e:
        raise ValidationError(
            f"option '{name}' must be numeric, got {value!r}"
        ) from e


@dataclass(frozen=True)
class SamplingParams:
    """Complete sampling state held by a session.

    Defaults follow the usual llama.cpp CLI values with a small min-p floor.
    ``num_predict == -1`` means "no per-session budget" (the hard cap applies);
    ``seed == -1`` means nondeterministic.
    """

    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    repeat_penalty: float = 1.1
    repeat_last_n: int = 64
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    num_predict: int = -1
    mirostat: int = 0
    mirostat_tau: float = _DEFAULT_MIROSTAT_TAU
    mirostat_eta: float = _DEFAULT_MIROSTAT_ETA
    seed: int = -1

    def __post_init__(self) -> None:
        """Validate field types; ranges are handled by :meth:`clamped`."""
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool):
                raise ValidationError(f"{f.name} must be numeric, got {value!r}")
            if f.name in _INT_OPTIONS:
                if not isinstance(value, int):
                    raise ValidationError(
                        f"{f.name} must be an integer, got {value!r}"
                    )
            elif not isinstance(value, (int, float)) or math.isnan(value):
                raise ValidationError(f"{f.name} must be a number, got {value!r}")

    def merge(self, options: SamplingOptions | Mapping[str, Any] | None) -> SamplingParams:
        """Return a copy with ``options`` applied, then clamped."""
        if not isinstance(options, SamplingOptions):
            options = SamplingOptions.from_mapping(options)
        updates = {
            name: value
            for name, value in dataclasses.asdict(options).items()
            if value is not None
        }
        return dataclasses.replace(self, **updates).clamped()

    def clamped(self) -> SamplingParams:
        """Return a copy with every field forced into its valid range."""
        return dataclasses.replace(
            self,
            temperature=min(max(self.temperature, 0.0), 2.0),
            top_k=max(self.top_k, 1),
            top_p=min(max(self.top_p, 0.0), 1.0),
            min_p=min(max(self.min_p, 0.0), 1.0),
            repeat_penalty=self.repeat_penalty if self.repeat_penalty >= 0 else 1.0,
            repeat_last_n=max(self.repeat_last_n, -1),
            presence_penalty=max(self.presence_penalty, 0.0),
            frequency_penalty=max(self.frequency_penalty, 0.0),
            num_predict=max(self.num_predict, -1),
            mirostat=self.mirostat if self.mirostat in (0, 1, 2) else 0,
            mirostat_tau=(
                self.mirostat_tau if self.mirostat_tau >= 0 else _DEFAULT_MIROSTAT_TAU
            ),
            mirostat_eta=(
                self.mirostat_eta if self.mirostat_eta >= 0 else _DEFAULT_MIROSTAT_ETA
            ),
            seed=max(self.seed, -1),
        )

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class SamplerStage:
    """One stage of a sampler chain: a llama.cpp sampler name and its arguments."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)


def build_sampler_stages(params: SamplingParams, n_vocab: int) -> list[SamplerStage]:
    """Describe the sampler chain for ``params`` in its fixed order.

    penalties -> top_k -> top_p -> min_p -> temp -> final draw. The final
    draw is a plain distribution sample unless mirostat is enabled, in which
    case the selected mirostat variant performs the draw instead.
    """
    stages = [
        SamplerStage(
            "penalties",
            {
                "last_n": params.repeat_last_n,
                "repeat": params.repeat_penalty,
                "freq": params.frequency_penalty,
                "present": params.presence_penalty,
            },
        ),
        SamplerStage("top_k", {"k": params.top_k}),
        SamplerStage("top_p", {"p": params.top_p, "min_keep": _MIN_KEEP}),
        SamplerStage("min_p", {"p": params.min_p, "min_keep": _MIN_KEEP}),
        SamplerStage("temp", {"t": params.temperature}),
    ]
    if params.mirostat == 1:
        stages.append(
            SamplerStage(
                "mirostat",
                {
                    "n_vocab": n_vocab,
                    "seed": params.seed,
                    "tau": params.mirostat_tau,
                    "eta": params.mirostat_eta,
                    "m": _MIROSTAT_M,
                },
            )
        )
    elif params.mirostat == 2:
        stages.append(
            SamplerStage(
                "mirostat_v2",
                {
                    "seed": params.seed,
                    "tau": params.mirostat_tau,
                    "eta": params.mirostat_eta,
                },
            )
        )
    else:
        stages.append(SamplerStage("dist", {"seed": params.seed}))
    return stages
