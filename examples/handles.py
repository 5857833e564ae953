#!/usr/bin/env python3
"""Handle-based API, as used by host-language bindings."""

import logging

from llama_session import api, set_log_level

MODEL_PATH = "models/gemma-3-1b-it-Q4_K_M.gguf"


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    set_log_level("error")  # quiet llama.cpp's own output

    handle = api.create(MODEL_PATH, n_ctx=4096)
    try:
        print(f"handle {handle} -> {api.version()}")
        api.configure(handle, {"temperature": 0.2, "num_predict": 64})

        api.generate(handle, "The capital of France is", reset=True)
        print(f"context after first turn: {api.get_context(handle)}")

        # Per-token trace through logging
        api.verbose(handle, True)
        api.generate(handle, " and of Italy,", max_tokens=6)
        api.verbose(handle, False)

        tokens = api.tokenize(handle, "Hello world")
        print(f"tokens: {tokens} -> {api.detokenize(handle, tokens)!r}")

        api.clear_session(handle)
        info = api.info(handle)
        print(f"{info['model_desc']}: {info['n_ctx_used']}/{info['n_ctx']} used")
    finally:
        api.release(handle)


if __name__ == "__main__":
    main()
