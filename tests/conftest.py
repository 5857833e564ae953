"""Shared pytest fixtures for llama-session tests."""

import os

import pytest

from llama_session import Backend, SamplerChain, Session, disable_logging
from llama_session.templates import render_template

MODEL_PATH = os.environ.get(
    "LLAMA_TEST_MODEL",
    os.path.join(os.path.dirname(__file__), "..", "models", "gemma-3-1b-it-Q4_K_M.gguf"),
)

requires_model = pytest.mark.skipif(
    not os.path.exists(MODEL_PATH), reason="test model not found"
)

BOS = 1
EOG = 2
CONTROL = 3
_CHAR_BASE = 100


def char_tokens(text):
    """Token ids the scripted backend uses for ``text`` (one per character)."""
    return [ord(c) + _CHAR_BASE for c in text]


class ScriptedChain(SamplerChain):
    def __init__(self, backend, stages):
        self.backend = backend
        self.stages = list(stages)
        self.accepted = []
        self.closed = False

    def sample(self):
        if self.backend.fail_sample:
            raise RuntimeError("sampler exploded")
        return self.backend.next_sample()

    def accept(self, token):
        self.accepted.append(token)

    def close(self):
        if not self.closed:
            self.closed = True
            self.backend.open_chains -= 1


class ScriptedBackend(Backend):
    """In-memory backend: one token per character, samples come from a script.

    Once the script runs out every sample is the end-of-generation token.
    """

    def __init__(self, n_ctx=512, script=(), template=None):
        self._n_ctx = n_ctx
        self.script = list(script)
        self.template = template
        self.pieces = {BOS: b"", EOG: b"", CONTROL: b"<ctrl>"}
        self.tokenize_calls = []
        self.decoded = []
        self.cleared = 0
        self.chains = []
        self.open_chains = 0
        self.closed = False
        self.fail_create = False
        self.fail_sample = False
        self.fail_decode_at = None

    # Script helpers ---------------------------------------------------------
    def queue_text(self, text):
        self.script.extend(char_tokens(text))

    def queue_piece(self, piece, token=None):
        token = token if token is not None else 2_000_000 + len(self.pieces)
        self.pieces[token] = piece
        self.script.append(token)
        return token

    def queue_token(self, token):
        self.script.append(token)

    def next_sample(self):
        return self.script.pop(0) if self.script else EOG

    @property
    def decoded_tokens(self):
        return [entry.token for batch in self.decoded for entry in batch]

    # Backend surface --------------------------------------------------------
    def n_ctx(self):
        return self._n_ctx

    def n_vocab(self):
        return 32000

    def tokenize(self, text, add_special):
        self.tokenize_calls.append((text, add_special))
        tokens = char_tokens(text)
        return [BOS, *tokens] if add_special else tokens

    def token_to_piece(self, token):
        if token in self.pieces:
            return self.pieces[token]
        return chr(token - _CHAR_BASE).encode("utf-8")

    def is_eog(self, token):
        return token == EOG

    def is_control(self, token):
        return token == CONTROL

    def decode(self, batch):
        if self.fail_decode_at is not None and len(self.decoded) == self.fail_decode_at:
            raise RuntimeError("llama_decode returned 1")
        self.decoded.append(list(batch))

    def create_sampler(self, stages):
        if self.fail_create:
            raise RuntimeError("Failed to create sampler chain")
        chain = ScriptedChain(self, stages)
        self.chains.append(chain)
        self.open_chains += 1
        return chain

    def clear_memory(self):
        self.cleared += 1

    def chat_template(self):
        return self.template

    def apply_chat_template(self, template, messages, add_generation_prompt=True):
        return render_template(
            template, messages, add_generation_prompt=add_generation_prompt
        )

    def metadata(self):
        meta = {"general.architecture": "scripted"}
        if self.template:
            meta["tokenizer.chat_template"] = self.template
        return meta

    def desc(self):
        return "scripted 1M Q8_0"

    def model_size(self):
        return 1_048_576

    def n_params(self):
        return 1_000_000

    def close(self):
        self.closed = True


@pytest.fixture
def backend():
    """Fresh scripted backend."""
    return ScriptedBackend()


@pytest.fixture
def session(backend):
    """Session driven by the scripted backend."""
    instance = Session("scripted.gguf", backend=backend)
    yield instance
    instance.close()


@pytest.fixture
def model_path():
    """Fixture providing model path, skips if not found."""
    if not os.path.exists(MODEL_PATH):
        pytest.skip("test model not found")
    return MODEL_PATH


@pytest.fixture(scope="module")
def llm():
    """Shared real-model session for integration tests."""
    if not os.path.exists(MODEL_PATH):
        pytest.skip("test model not found")
    disable_logging()
    instance = Session(MODEL_PATH)
    yield instance
    instance.close()
