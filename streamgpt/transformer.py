"""
Transformer Encoder Block

The repeating unit of the model: a pre-norm residual wrapper around
multi-head self-attention followed by a pre-norm residual wrapper around a
position-wise feed-forward network.

    x -> LayerNorm -> MultiHeadAttention -> Dropout -> + x
      -> LayerNorm -> FeedForward        -> Dropout -> + (previous sum)

Reference: "Attention Is All You Need" (Vaswani et al., 2017) Section 3.1, 3.3
           "Language Models are Unsupervised Multitask Learners" (GPT-2 paper)

Classes:
    FeedForwardNetwork: Linear -> GELU -> Dropout -> Linear
    EncoderBlock: Attention and feed-forward sublayers with residuals
"""

from typing import Optional

import numpy as np

from streamgpt.attention import MultiHeadAttention
from streamgpt.cache import AttentionState
from streamgpt.layers import Dropout, LayerNorm, Linear
from streamgpt.operators import gelu, gelu_backward


class FeedForwardNetwork:
    """
    Position-wise Feed-Forward Network.

        FFN(x) = Linear_2(Dropout(GELU(Linear_1(x))))

    Applied to every time step independently. The hidden width defaults to
    4 * d_model.
    """

    def __init__(
        self,
        embedding_dimension: int,
        hidden_dimension: Optional[int] = None,
        dropout_rate: float = 0.0,
        rng: Optional[np.random.Generator] = None,
    ):
        self.embedding_dimension = embedding_dimension
        self.hidden_dimension = hidden_dimension or (4 * embedding_dimension)

        self.linear_1 = Linear(embedding_dimension, self.hidden_dimension, rng=rng)
        self.dropout = Dropout(dropout_rate)
        self.linear_2 = Linear(self.hidden_dimension, embedding_dimension, rng=rng)

        self._hidden_cache = None

    def forward(
        self,
        input_tensor: np.ndarray,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
        hidden = self.linear_1.forward(input_tensor)
        self._hidden_cache = hidden

        activated = self.dropout.forward(gelu(hidden), training=training, rng=rng)
        return self.linear_2.forward(activated)

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        d_activated = self.dropout.backward(self.linear_2.backward(upstream_gradient))
        d_hidden = gelu_backward(d_activated, self._hidden_cache)
        return self.linear_1.backward(d_hidden)

    def get_parameters(self) -> dict:
        """Return all learnable parameters."""
        params = {}
        params.update(
            {f"ffn_linear1_{k}": v for k, v in self.linear_1.get_parameters().items()}
        )
        params.update(
            {f"ffn_linear2_{k}": v for k, v in self.linear_2.get_parameters().items()}
        )
        return params

    def get_gradients(self) -> dict:
        """Return all parameter gradients."""
        grads = {}
        grads.update(
            {f"ffn_linear1_{k}": v for k, v in self.linear_1.get_gradients().items()}
        )
        grads.update(
            {f"ffn_linear2_{k}": v for k, v in self.linear_2.get_gradients().items()}
        )
        return grads


class EncoderBlock:
    """
    Single pre-norm transformer block (GPT-2 layout).

    Each call runs two stages in order:
        (a) pre-norm -> multi-head attention -> dropout -> residual add
        (b) pre-norm -> feed-forward -> dropout -> residual add

    When an AttentionState is passed, it is threaded through stage (a) only;
    the feed-forward stage is position-wise and needs no history.

    Why Pre-LN?
        The gradient reaches every block through the residual path
        unnormalized, which keeps deep stacks trainable without warmup tricks.

    Reference:
        - "On Layer Normalization in the Transformer Architecture" (Xiong et al., 2020)
    """

    def __init__(
        self,
        embedding_dimension: int,
        num_heads: int,
        ffn_hidden_dimension: Optional[int] = None,
        dropout_rate: float = 0.0,
        causal: bool = True,
        rng: Optional[np.random.Generator] = None,
    ):
        self.embedding_dimension = embedding_dimension
        self.num_heads = num_heads

        self.attention_layer_norm = LayerNorm(embedding_dimension)
        self.self_attention = MultiHeadAttention(
            embedding_dimension,
            num_heads,
            causal=causal,
            dropout_rate=dropout_rate,
            rng=rng,
        )
        self.attention_dropout = Dropout(dropout_rate)

        self.ffn_layer_norm = LayerNorm(embedding_dimension)
        self.feed_forward = FeedForwardNetwork(
            embedding_dimension,
            hidden_dimension=ffn_hidden_dimension,
            dropout_rate=dropout_rate,
            rng=rng,
        )
        self.ffn_dropout = Dropout(dropout_rate)

    def forward(
        self,
        input_tensor: np.ndarray,
        mask: Optional[np.ndarray] = None,
        state: Optional[AttentionState] = None,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
        """
        Forward pass through the block.

        Args:
            input_tensor: Shape (batch, seq, embedding_dim)
            mask: Optional extra attention mask (ANDed with the causal mask)
            state: Optional AttentionState for streaming decode
            training: Enables every dropout in the block
            rng: Random source for dropout

        Returns:
            Output of shape (batch, seq, embedding_dim)
        """
        # ============ Attention Sub-block ============
        attended = self.attention_layer_norm.forward(input_tensor)
        attended = self.self_attention.forward(
            attended, mask=mask, state=state, training=training, rng=rng
        )
        attended = self.attention_dropout.forward(attended, training=training, rng=rng)
        residual = input_tensor + attended

        # ============ Feed-Forward Sub-block ============
        inferred = self.ffn_layer_norm.forward(residual)
        inferred = self.feed_forward.forward(inferred, training=training, rng=rng)
        inferred = self.ffn_dropout.forward(inferred, training=training, rng=rng)

        return residual + inferred

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Backward pass through the block.

        At each residual add the gradient flows both straight through and
        into the sublayer; the two contributions are summed.
        """
        d_inferred = self.ffn_dropout.backward(upstream_gradient)
        d_inferred = self.feed_forward.backward(d_inferred)
        d_residual = upstream_gradient + self.ffn_layer_norm.backward(d_inferred)

        d_attended = self.attention_dropout.backward(d_residual)
        d_attended = self.self_attention.backward(d_attended)
        return d_residual + self.attention_layer_norm.backward(d_attended)

    def get_parameters(self) -> dict:
        """Return all learnable parameters."""
        params = {}
        params.update(
            {f"attn_ln_{k}": v for k, v in self.attention_layer_norm.get_parameters().items()}
        )
        params.update(
            {f"attn_{k}": v for k, v in self.self_attention.get_parameters().items()}
        )
        params.update(
            {f"ffn_ln_{k}": v for k, v in self.ffn_layer_norm.get_parameters().items()}
        )
        params.update(self.feed_forward.get_parameters())
        return params

    def get_gradients(self) -> dict:
        """Return all parameter gradients."""
        grads = {}
        grads.update(
            {f"attn_ln_{k}": v for k, v in self.attention_layer_norm.get_gradients().items()}
        )
        grads.update(
            {f"attn_{k}": v for k, v in self.self_attention.get_gradients().items()}
        )
        grads.update(
            {f"ffn_ln_{k}": v for k, v in self.ffn_layer_norm.get_gradients().items()}
        )
        grads.update(self.feed_forward.get_gradients())
        return grads
