"""Chat message normalisation and Jinja chat-template rendering."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import jinja2
from jinja2.sandbox import ImmutableSandboxedEnvironment

# Used when the model ships no tokenizer.chat_template
FALLBACK_CHAT_TEMPLATE = (
    "{% for message in messages %}"
    "{{ message.role }}: {{ message.content }}\n"
    "{% endfor %}"
    "{% if add_generation_prompt %}assistant:{% endif %}"
)

_env = ImmutableSandboxedEnvironment(
    loader=jinja2.BaseLoader(),
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


def _raise_exception(message: str) -> None:
    raise jinja2.exceptions.TemplateError(message)


def normalize_messages(messages: Sequence[Any]) -> list[tuple[str, str]]:
    """Convert chat messages into ``(role, content)`` pairs.

    Accepts mappings with ``role``/``content`` keys or 2-item sequences.
    List content (OpenAI style parts) is flattened to its text.
    """
    pairs: list[tuple[str, str]] = []
    for msg in messages:
        if isinstance(msg, Mapping):
            role = msg.get("role") or "user"
            content = msg.get("content")
        else:
            role, content = msg
        if content is None:
            content = ""
        if isinstance(content, list):
            content = "".join(
                c.get("text", "") if isinstance(c, dict) else str(c) for c in content
            )
        pairs.append((str(role), str(content)))
    return pairs


def render_template(
    template: str,
    messages: Sequence[tuple[str, str]],
    *,
    add_generation_prompt: bool = True,
    bos_token: str = "",
    eos_token: str = "",
) -> str:
    """Render a Jinja chat template in a sandbox.

    Raises:
        RuntimeError: If the template cannot be compiled or rendered.
    """
    try:
        compiled = _env.from_string(template)
        return compiled.render(
            messages=[{"role": r, "content": c} for r, c in messages],
            add_generation_prompt=add_generation_prompt,
            bos_token=bos_token,
            eos_token=eos_token,
            raise_exception=_raise_exception,
        )
    except jinja2.exceptions.TemplateError as e:
        raise RuntimeError(f"Chat template rendering failed: {e}") from e
