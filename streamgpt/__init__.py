"""
Streaming GPT Attention in NumPy

A GPT-style decoder whose attention layers can consume a token stream
incrementally through a per-layer key/value cache. Every custom tensor
operation has a hand-written backward pass, so the whole model can be
trained without an autodiff framework.

Modules:
    errors: ShapeError
    operators: Batched matmul, masked softmax, GELU (forward/backward pairs)
    layers: Linear, LayerNorm, Embedding, Dropout
    cache: AttentionState (the KV cache)
    attention: QKV split, causal mask, head split/join, attention core, multi-head attention
    transformer: Feed-forward network and encoder block
    model: HyperParameters and the TransformerStack language model

Reference:
    "Attention Is All You Need" (Vaswani et al., 2017)
    https://arxiv.org/abs/1706.03762
"""

import logging as _logging

__version__ = "1.0.0"

_logging.getLogger(__name__).addHandler(_logging.NullHandler())
