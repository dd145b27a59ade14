"""
Attention Mechanism

Scaled dot-product self-attention, its multi-head variant, causal masking and
the streaming (KV-cached) decode path, each with a hand-written backward pass.

The projection to query/key/value is fused: one Linear produces a tensor of
width 3 * d_model which is split into heads and then, per head, into query,
key and value blocks. Heads are folded into the batch axis so the attention
core only ever sees rank-3 tensors.

Reference: "Attention Is All You Need" (Vaswani et al., 2017) Section 3.2
           https://arxiv.org/abs/1706.03762

Functions:
    causal_mask: Right-aligned lower-triangular mask for Q queries over K keys
    split_heads / join_heads: Fold heads into / out of the batch axis
    split_qkv_backward: Gradient of QueryKeyValue.split

Classes:
    QueryKeyValue: The query/key/value triple sliced from a fused projection
    Attention: Scaled dot-product attention core (optionally streaming)
    MultiHeadAttention: Fused projection + heads + attention core + output projection
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from streamgpt.cache import AttentionState
from streamgpt.errors import ShapeError
from streamgpt.layers import Dropout, Linear
from streamgpt.operators import (
    batched_matmul,
    batched_matmul_backward,
    masked_softmax,
    masked_softmax_backward,
    softmax,
)

logger = logging.getLogger(__name__)


@dataclass
class QueryKeyValue:
    """
    Query, key and value tensors, each of shape (batch, time, features).
    """

    query: np.ndarray
    key: np.ndarray
    value: np.ndarray

    @classmethod
    def split(cls, fused: np.ndarray) -> "QueryKeyValue":
        """
        Slice a fused (batch, time, 3 * f) tensor into three f-wide blocks.

        The blocks are taken in the fixed order query, key, value, with no
        permutation of the features inside a block.

        Raises:
            ShapeError: If ``fused`` is not rank 3 or its feature axis is not
                divisible by 3.
        """
        if fused.ndim != 3:
            raise ShapeError(f"Fused QKV tensor must be rank 3, got {fused.shape}")
        if fused.shape[-1] % 3 != 0:
            raise ShapeError(
                f"Fused QKV feature axis ({fused.shape[-1]}) is not divisible by 3"
            )

        features = fused.shape[-1] // 3
        return cls(
            query=fused[:, :, :features],
            key=fused[:, :, features : 2 * features],
            value=fused[:, :, 2 * features :],
        )

    def concatenated(self) -> np.ndarray:
        """Exact inverse of ``split``."""
        return np.concatenate([self.query, self.key, self.value], axis=-1)


def split_qkv_backward(
    d_query: np.ndarray, d_key: np.ndarray, d_value: np.ndarray
) -> np.ndarray:
    """Gradient of QueryKeyValue.split: concatenate the three gradients in order."""
    return np.concatenate([d_query, d_key, d_value], axis=-1)


def causal_mask(query_time_steps: int, key_time_steps: int) -> np.ndarray:
    """
    Create a causal (autoregressive) attention mask.

    Queries and keys are aligned on their last step: query i sits at
    position i - Q and key j at position j - K. Key j is visible to query i
    when it is not in query i's future, i.e. when (K - j) >= (Q - i).

    For Q == K this is the usual lower triangle. For Q < K, as in streaming
    decode where Q new queries attend over K cached keys, every query also
    sees the whole history before the new steps.

    Args:
        query_time_steps: Number of query steps Q
        key_time_steps: Number of key steps K

    Returns:
        Boolean mask of shape (Q, K), True where attention is allowed

    Example:
        >>> causal_mask(2, 4).astype(int)
        array([[1, 1, 1, 0],
               [1, 1, 1, 1]])
    """
    if query_time_steps < 1 or key_time_steps < 1:
        raise ShapeError(
            f"Causal mask needs positive step counts, got "
            f"{query_time_steps} queries and {key_time_steps} keys"
        )

    offset = key_time_steps - query_time_steps
    return np.tri(query_time_steps, key_time_steps, k=offset, dtype=bool)


def split_heads(input_tensor: np.ndarray, head_count: int) -> np.ndarray:
    """
    Fold attention heads into the batch axis.

    (batch, time, features)
        -> reshape   (batch, time, heads, features / heads)
        -> transpose (batch, heads, time, features / heads)
        -> reshape   (batch * heads, time, features / heads)

    Raises:
        ShapeError: If the input is not rank 3 or features is not divisible
            by head_count.
    """
    if input_tensor.ndim != 3:
        raise ShapeError(f"split_heads expects rank 3, got {input_tensor.shape}")

    batch_size, time_steps, features = input_tensor.shape
    if features % head_count != 0:
        raise ShapeError(
            f"Feature axis ({features}) is not divisible by head count ({head_count})"
        )

    features_per_head = features // head_count
    split = input_tensor.reshape(batch_size, time_steps, head_count, features_per_head)
    return split.transpose(0, 2, 1, 3).reshape(
        batch_size * head_count, time_steps, features_per_head
    )


def join_heads(input_tensor: np.ndarray, head_count: int) -> np.ndarray:
    """
    Exact inverse of split_heads:
    (batch * heads, time, features / heads) -> (batch, time, features).
    """
    if input_tensor.ndim != 3:
        raise ShapeError(f"join_heads expects rank 3, got {input_tensor.shape}")

    generalized_batch, time_steps, features_per_head = input_tensor.shape
    if generalized_batch % head_count != 0:
        raise ShapeError(
            f"Batch axis ({generalized_batch}) is not divisible by head count "
            f"({head_count})"
        )

    batch_size = generalized_batch // head_count
    split = input_tensor.reshape(batch_size, head_count, time_steps, features_per_head)
    return split.transpose(0, 2, 1, 3).reshape(
        batch_size, time_steps, head_count * features_per_head
    )


def split_heads_backward(upstream_gradient: np.ndarray, head_count: int) -> np.ndarray:
    """split_heads is a pure permutation; its gradient is the inverse permutation."""
    return join_heads(upstream_gradient, head_count)


def join_heads_backward(upstream_gradient: np.ndarray, head_count: int) -> np.ndarray:
    """join_heads is a pure permutation; its gradient is split_heads."""
    return split_heads(upstream_gradient, head_count)


class Attention:
    """
    Scaled Dot-Product Attention core.

        Attention(Q, K, V) = dropout(softmax(Q @ K^T / sqrt(d_k), mask)) @ V

    The layer has no weights. It holds its scale, whether it is causal, and
    its dropout rate. The scale is fixed at construction as
    sqrt(scale_dimension), which defaults to the per-unit feature width;
    MultiHeadAttention passes its full embedding width instead.

    Two entry points:
        attend: attention over explicit query/key/value tensors
        forward: attention over a fused QKV tensor, optionally streaming
                 through an AttentionState

    Masking:
        An explicit mask (1/True = attend) may be passed to either call. A
        causal layer additionally derives causal_mask(query_len, key_len) on
        every call and ANDs the two. A mask row that permits no key at all
        is a caller error and raises ShapeError.

    Attributes:
        head_dimension: Features per attention unit (d_k)
        scale: sqrt(scale_dimension), or sqrt(head_dimension) by default
        causal: Whether to apply causal masking
        attention_weights: Softmax scores of the last call (before dropout)
    """

    def __init__(
        self,
        head_dimension: int,
        causal: bool = False,
        dropout_rate: float = 0.0,
        scale_dimension: Optional[int] = None,
    ):
        self.head_dimension = head_dimension
        self.scale = np.sqrt(scale_dimension or head_dimension)
        self.causal = causal
        self.dropout = Dropout(dropout_rate)

        self.attention_weights = None

        # Cache for backward pass
        self._query_cache = None
        self._key_cache = None
        self._value_cache = None
        self._dropped_weights_cache = None
        self._new_steps = None

    def _effective_mask(
        self, mask: Optional[np.ndarray], logits_shape: Tuple[int, ...]
    ) -> Optional[np.ndarray]:
        query_steps, key_steps = logits_shape[-2:]

        if mask is not None:
            try:
                mask = np.broadcast_to(np.asarray(mask) > 0, logits_shape)
            except ValueError as error:
                raise ShapeError(
                    f"Mask of shape {np.shape(mask)} does not broadcast to attention "
                    f"logits of shape {logits_shape}"
                ) from error

        if self.causal:
            causal = causal_mask(query_steps, key_steps)
            mask = causal if mask is None else np.logical_and(mask, causal)

        if mask is not None and not np.all(np.any(mask, axis=-1)):
            raise ShapeError("Attention mask suppresses every key for some query")

        return mask

    def attend(
        self,
        query: np.ndarray,
        key: np.ndarray,
        value: np.ndarray,
        mask: Optional[np.ndarray] = None,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
        """
        Compute attention of ``query`` over ``key``/``value``.

        Steps:
            1. logits = Q @ K^T / scale
            2. score = softmax(logits), or masked_softmax(logits, mask)
            3. score = dropout(score) (training only)
            4. output = score @ V

        Args:
            query: Shape (batch, seq_q, d_k)
            key: Shape (batch, seq_k, d_k)
            value: Shape (batch, seq_k, d_v)
            mask: Optional mask broadcastable to (batch, seq_q, seq_k)
            training: Enables dropout
            rng: Random source for dropout (required when dropout is active)

        Returns:
            Output of shape (batch, seq_q, d_v)
        """
        if key.shape[-2] != value.shape[-2]:
            raise ShapeError(
                f"Key and value time axes differ: {key.shape} vs {value.shape}"
            )

        logits = batched_matmul(query, key, adjoint_right=True) / self.scale

        effective_mask = self._effective_mask(mask, logits.shape)
        if effective_mask is None:
            score = softmax(logits)
        else:
            score = masked_softmax(logits, effective_mask)

        dropped = self.dropout.forward(score, training=training, rng=rng)
        output = batched_matmul(dropped, value)

        self.attention_weights = score
        self._new_steps = None
        self._query_cache = query
        self._key_cache = key
        self._value_cache = value
        self._dropped_weights_cache = dropped

        return output

    def attend_backward(
        self, upstream_gradient: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Backward pass of ``attend``.

        Args:
            upstream_gradient: Gradient w.r.t. the output, shape (batch, seq_q, d_v)

        Returns:
            d_query, d_key, d_value
        """
        # output = dropped @ V
        d_dropped, d_value = batched_matmul_backward(
            upstream_gradient, self._dropped_weights_cache, self._value_cache
        )
        d_score = self.dropout.backward(d_dropped)

        # score = masked_softmax(logits); masked entries have score 0 and get no gradient
        d_logits = masked_softmax_backward(d_score, self.attention_weights) / self.scale

        # logits = Q @ K^T
        d_query, d_key = batched_matmul_backward(
            d_logits, self._query_cache, self._key_cache, adjoint_right=True
        )

        return d_query, d_key, d_value

    def forward(
        self,
        fused: np.ndarray,
        mask: Optional[np.ndarray] = None,
        state: Optional[AttentionState] = None,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
        """
        Attention over a fused QKV tensor.

        Without ``state`` this is attend(split(fused)). With ``state``, the
        new queries attend over the cached history plus this call's keys and
        values; the output covers only the newly supplied time steps. The
        state is extended in place only once attention has succeeded, so a
        call that raises leaves it untouched.

        Args:
            fused: Shape (batch, seq_new, 3 * head_dimension)
            mask: Optional mask broadcastable to (batch, seq_new, seq_total)
            state: Optional AttentionState, mutated in place
            training: Enables dropout
            rng: Random source for dropout

        Returns:
            Output of shape (batch, seq_new, head_dimension)
        """
        qkv = QueryKeyValue.split(fused)
        if qkv.query.shape[-1] != self.head_dimension:
            raise ShapeError(
                f"Expected {self.head_dimension} features per block, got "
                f"{qkv.query.shape[-1]}"
            )

        if state is None:
            key, value = qkv.key, qkv.value
        else:
            key, value = state.extended(qkv.key, qkv.value)

        output = self.attend(qkv.query, key, value, mask=mask, training=training, rng=rng)

        if state is not None:
            state.commit(key, value)
        self._new_steps = qkv.key.shape[1]
        return output

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Backward pass of ``forward``: gradient w.r.t. the fused QKV input.

        Keys and values cached by earlier calls are constants here; only the
        trailing slice belonging to this call's input receives gradient.

        Raises:
            RuntimeError: If the last call was ``attend`` rather than ``forward``
        """
        if self._new_steps is None:
            raise RuntimeError(
                "Attention.backward needs a preceding forward(); use "
                "attend_backward after attend()"
            )
        d_query, d_key, d_value = self.attend_backward(upstream_gradient)

        first_new_step = d_key.shape[1] - self._new_steps
        return split_qkv_backward(
            d_query, d_key[:, first_new_step:], d_value[:, first_new_step:]
        )


class MultiHeadAttention:
    """
    Multi-Head Self-Attention Layer.

        MultiHead(x) = Concat(head_1, ..., head_h) @ W^O
        where head_i = Attention(split_i(x @ W^QKV))

    Architecture:
        1. Fused projection: d_model -> 3 * d_model
        2. Split into h heads, folded into the batch axis
        3. Attention core per head (query/key/value sliced per head)
        4. Join heads back to d_model
        5. Output projection: d_model -> d_model

    The same ``forward`` serves the stateless call and the streaming call;
    a state for this layer has shape (batch * h, time, d_model / h), see
    ``new_state``.

    Reference: "Attention Is All You Need" Section 3.2.2
    """

    def __init__(
        self,
        embedding_dimension: int,
        num_heads: int,
        causal: bool = False,
        dropout_rate: float = 0.0,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Raises:
            ShapeError: If embedding_dimension is not divisible by num_heads
        """
        if embedding_dimension % num_heads != 0:
            raise ShapeError(
                f"Embedding dimension ({embedding_dimension}) must be divisible by "
                f"number of heads ({num_heads})"
            )

        self.embedding_dimension = embedding_dimension
        self.num_heads = num_heads
        self.head_dimension = embedding_dimension // num_heads

        self.qkv_projection = Linear(embedding_dimension, 3 * embedding_dimension, rng=rng)
        self.output_projection = Linear(embedding_dimension, embedding_dimension, rng=rng)
        # Logits are scaled by the full model width, not the per-head width
        self.attention = Attention(
            self.head_dimension,
            causal=causal,
            dropout_rate=dropout_rate,
            scale_dimension=embedding_dimension,
        )

    def new_state(self, batch_size: int = 1) -> AttentionState:
        """An empty AttentionState sized for this layer."""
        return AttentionState.empty(batch_size * self.num_heads, self.head_dimension)

    def _mask_per_head(self, mask: Optional[np.ndarray]) -> Optional[np.ndarray]:
        # A per-example mask (batch, seq_q, seq_k) must follow the heads into the batch axis
        if mask is not None and np.ndim(mask) == 3:
            return np.repeat(mask, self.num_heads, axis=0)
        return mask

    def forward(
        self,
        input_tensor: np.ndarray,
        mask: Optional[np.ndarray] = None,
        state: Optional[AttentionState] = None,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
        """
        Forward pass through multi-head self-attention.

        Args:
            input_tensor: Shape (batch, seq, embedding_dim)
            mask: Optional mask of shape (seq_q, seq_k) or (batch, seq_q, seq_k)
            state: Optional AttentionState for streaming decode
            training: Enables attention dropout
            rng: Random source for dropout

        Returns:
            Output of shape (batch, seq, embedding_dim)
        """
        if input_tensor.ndim != 3 or input_tensor.shape[-1] != self.embedding_dimension:
            raise ShapeError(
                f"Expected input of shape (batch, time, {self.embedding_dimension}), "
                f"got {input_tensor.shape}"
            )

        fused = self.qkv_projection.forward(input_tensor)
        fused_heads = split_heads(fused, self.num_heads)

        heads = self.attention.forward(
            fused_heads,
            mask=self._mask_per_head(mask),
            state=state,
            training=training,
            rng=rng,
        )

        return self.output_projection.forward(join_heads(heads, self.num_heads))

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Backward pass; parameter gradients are stored on the projections.

        Returns:
            Gradient w.r.t. the input, shape (batch, seq, embedding_dim)
        """
        d_joined = self.output_projection.backward(upstream_gradient)
        d_heads = join_heads_backward(d_joined, self.num_heads)
        d_fused_heads = self.attention.backward(d_heads)
        d_fused = split_heads_backward(d_fused_heads, self.num_heads)
        return self.qkv_projection.backward(d_fused)

    @property
    def attention_weights(self) -> Optional[np.ndarray]:
        """Scores of the last call, shape (batch, heads, seq_q, seq_k)."""
        weights = self.attention.attention_weights
        if weights is None:
            return None
        return weights.reshape(-1, self.num_heads, *weights.shape[1:])

    def get_parameters(self) -> dict:
        """Return all learnable parameters."""
        params = {}
        params.update(
            {f"qkv_{k}": v for k, v in self.qkv_projection.get_parameters().items()}
        )
        params.update(
            {f"output_{k}": v for k, v in self.output_projection.get_parameters().items()}
        )
        return params

    def get_gradients(self) -> dict:
        """Return all parameter gradients."""
        grads = {}
        grads.update(
            {f"qkv_{k}": v for k, v in self.qkv_projection.get_gradients().items()}
        )
        grads.update(
            {f"output_{k}": v for k, v in self.output_projection.get_gradients().items()}
        )
        return grads


# =============================================================================
# DEMO
# Run with: python -m streamgpt.attention
# =============================================================================
if __name__ == "__main__":
    print("Causal mask for 3 new queries over 5 keys (streaming decode):")
    print(causal_mask(3, 5).astype(int))
    print()

    rng = np.random.default_rng(0)
    mha = MultiHeadAttention(embedding_dimension=16, num_heads=4, causal=True, rng=rng)
    sequence = rng.standard_normal((1, 6, 16))

    full = mha.forward(sequence)

    state = mha.new_state()
    first = mha.forward(sequence[:, :3], state=state)
    second = mha.forward(sequence[:, 3:], state=state)
    streamed = np.concatenate([first, second], axis=1)

    print(f"Cached time steps after two calls: {state.time_steps}")
    print(f"Max |full - streamed|: {np.max(np.abs(full - streamed)):.2e}")
