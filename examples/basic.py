#!/usr/bin/env python3
"""Minimal session example: continuation, chat and streaming callback."""
import time

from llama_session import ModelLoadError, Session, shutdown

MODEL_PATH = "models/gemma-3-1b-it-Q4_K_M.gguf"


def main() -> None:
    start = time.perf_counter()

    try:
        # Use context manager for automatic resource cleanup
        with Session(MODEL_PATH) as session:
            session.configure({"temperature": 0.7, "top_p": 0.9, "repeat_penalty": 1.05})

            print("=== First turn (system prompt applies) ===")
            text = session.generate(
                "Introduce yourself in one sentence.",
                system="You are a terse assistant.",
                max_tokens=48,
            )
            print(text)

            print("\n=== Continuation (same context) ===")
            session.generate(
                " Now say it in French.",
                callback=lambda fragment: print(fragment, end="", flush=True),
                max_tokens=48,
            )
            print(f"\n[context: {session.position}/{session.n_ctx} tokens]")

            print("\n=== Chat (always starts from an empty context) ===")
            reply = session.chat(
                [
                    {"role": "system", "content": "Answer with one word."},
                    {"role": "user", "content": "Name a large ocean."},
                ],
                max_tokens=16,
            )
            print(reply)

            telemetry = session.info()["telemetry"]
            print(
                f"\nprompt: {telemetry['ingest_tps']:.1f} tok/s, "
                f"generation: {telemetry['generate_tps']:.1f} tok/s"
            )

    except ModelLoadError as e:
        print(f"Failed to load model: {e}")
        return
    finally:
        shutdown()

    elapsed = time.perf_counter() - start
    print(f"\nExecution time: {elapsed:.2f}s")


if __name__ == "__main__":
    main()
