#!/usr/bin/env python3
"""
Streaming Decode Demo

Builds a small randomly initialised model and walks through the streaming
attention path:
1. Feed a text in chunks through the per-layer KV cache
2. Check the chunked logits against a single full-sequence pass
3. Generate a continuation token by token from the cache

The model is untrained, so generated text is noise; the point is the
mechanics (cache growth, position offsets, equivalence).

Usage:
    python run_demo.py [--text TEXT] [--chunk-size N] [--new-tokens N] [--verbose]
"""

import argparse
import logging

import numpy as np

from streamgpt.model import HyperParameters, TransformerStack

logger = logging.getLogger("run_demo")


class ByteTokenizer:
    """UTF-8 bytes as token ids; stands in for a real BPE tokenizer."""

    vocabulary_size = 256

    def encode(self, text: str):
        return list(text.encode("utf-8"))

    def decode(self, ids) -> str:
        return bytes(int(i) for i in ids).decode("utf-8", errors="replace")


def print_section(text: str):
    print()
    print("-" * 60)
    print(text)
    print("-" * 60)


def main():
    parser = argparse.ArgumentParser(description="Streaming attention demo")
    parser.add_argument("--text", default="To be, or not to be, that is the question")
    parser.add_argument("--chunk-size", type=int, default=8)
    parser.add_argument("--new-tokens", type=int, default=24)
    parser.add_argument("--embedding-size", type=int, default=64)
    parser.add_argument("--head-count", type=int, default=4)
    parser.add_argument("--layer-count", type=int, default=2)
    parser.add_argument("--context-size", type=int, default=128)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    tokenizer = ByteTokenizer()
    hyper_parameters = HyperParameters(
        vocabulary_size=tokenizer.vocabulary_size,
        context_size=args.context_size,
        embedding_size=args.embedding_size,
        head_count=args.head_count,
        layer_count=args.layer_count,
        dropout_rate=0.0,
    )
    rng = np.random.default_rng(args.seed)
    model = TransformerStack(hyper_parameters, tokenizer=tokenizer, rng=rng)

    # -------------------------------------------------------------------------
    print_section("1. Streaming the prompt in chunks")
    chunks = [
        args.text[i : i + args.chunk_size]
        for i in range(0, len(args.text), args.chunk_size)
    ]
    streamed = []
    for chunk in chunks:
        streamed.append(model(chunk))
        print(f"  fed {chunk!r:<14} cache length = {model.cache_length}")
    streamed_logits = np.concatenate(streamed, axis=1)

    # -------------------------------------------------------------------------
    print_section("2. Streaming vs. full-sequence pass")
    tokens = np.array([tokenizer.encode(args.text)])
    full_logits = model.forward(tokens)
    difference = np.max(np.abs(full_logits - streamed_logits))
    print(f"  max |full - streamed| = {difference:.2e}")

    # -------------------------------------------------------------------------
    print_section("3. Greedy generation from the cache")
    generated = model.generate(tokens, max_new_tokens=args.new_tokens, temperature=0)
    continuation = tokenizer.decode(generated[0, tokens.shape[1] :])
    print(f"  prompt:       {args.text!r}")
    print(f"  continuation: {continuation!r}")
    logger.info("Done; cache holds %d tokens", model.cache_length)


if __name__ == "__main__":
    main()
