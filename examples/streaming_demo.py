#!/usr/bin/env python3
"""Streaming demo: iterator streaming, async calls and early cancellation."""

import asyncio
import time

from llama_session import LlamaConfig, Session

MODEL_PATH = "models/gemma-3-1b-it-Q4_K_M.gguf"


def demo_iterator(session: Session) -> None:
    print("=" * 70)
    print("ITERATOR STREAMING: generate_stream()")
    print("=" * 70)

    start_time = time.time()
    first_chunk_time = None
    for chunk in session.generate_stream("Count from 1 to 10:", reset=True, max_tokens=64):
        if first_chunk_time is None:
            first_chunk_time = time.time()
        print(chunk, end="", flush=True)
    end_time = time.time()

    if first_chunk_time is not None:
        print(f"\n\n  Time to first chunk: {first_chunk_time - start_time:.3f}s")
    print(f"  Total time: {end_time - start_time:.3f}s\n")


def demo_cancel(session: Session) -> None:
    print("=" * 70)
    print("EARLY STOP: closing the iterator")
    print("=" * 70)

    stream = session.chat_stream([{"role": "user", "content": "Write a long story."}])
    received = 0
    for chunk in stream:
        print(chunk, end="", flush=True)
        received += len(chunk)
        if received > 120:
            stream.close()
            break
    print(f"\n\n  Stopped after {session.info()['telemetry']['tokens_generated']} tokens\n")


async def demo_async(session: Session) -> None:
    print("=" * 70)
    print("ASYNC: concurrent requests serialise on one session")
    print("=" * 70)

    answers = await asyncio.gather(
        session.chat_async([{"role": "user", "content": "Name a color."}], max_tokens=8),
        session.chat_async([{"role": "user", "content": "Name a fruit."}], max_tokens=8),
    )
    for answer in answers:
        print(f"  {answer.strip()}")


def main() -> None:
    config = LlamaConfig(model_path=MODEL_PATH, n_ctx=2048)
    with Session(MODEL_PATH, config=config) as session:
        demo_iterator(session)
        demo_cancel(session)
        asyncio.run(demo_async(session))


if __name__ == "__main__":
    main()
