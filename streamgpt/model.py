"""
GPT Language Model with Streaming Decode

Assembles the full decoder-only model and owns the per-layer attention
state that lets it consume a growing token stream one chunk at a time.

Architecture Overview:
    Input Token IDs
           |
    [Token Embedding] + [Learned Positional Embedding]
           |
    [Encoder Block] x N   (causal, each with its own AttentionState)
           |
    [LayerNorm]
           |
    [Token Embedding]^T   (weight tying) -> Vocabulary Logits

Streaming:
    With ``use_cache=True`` the positions of the new tokens start where the
    cached history ends, and every block appends its keys/values to its
    state. The output covers only the new tokens. ``reset_state`` starts an
    independent sequence. The cache never evicts on its own; the history is
    bounded by ``context_size`` because positions beyond it have no
    positional embedding.

Reference:
    - "Language Models are Unsupervised Multitask Learners" (GPT-2, Radford et al., 2019)

Classes:
    HyperParameters: Immutable model shape
    TransformerStack: Complete language model

Functions:
    cross_entropy_loss: Average next-token cross-entropy
    cross_entropy_loss_backward: Gradient of cross_entropy_loss w.r.t. logits
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from streamgpt.cache import AttentionState
from streamgpt.errors import ShapeError
from streamgpt.layers import Embedding, LayerNorm
from streamgpt.operators import softmax
from streamgpt.transformer import EncoderBlock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HyperParameters:
    """
    Model hyperparameters, fixed at construction.

    Attributes:
        vocabulary_size: Number of token ids
        context_size: Maximum number of positions (rows of the positional table)
        embedding_size: d_model
        head_count: Attention heads per block
        layer_count: Number of encoder blocks
        ffn_hidden_size: Feed-forward width (default 4 * embedding_size)
        dropout_rate: Dropout probability used at training time

    Defaults follow GPT-2 small's vocabulary, width and head count with a
    shallow stack.
    """

    vocabulary_size: int = 50257
    context_size: int = 512
    embedding_size: int = 768
    head_count: int = 12
    layer_count: int = 3
    ffn_hidden_size: Optional[int] = None
    dropout_rate: float = 0.2

    def __post_init__(self):
        sizes = (
            self.vocabulary_size,
            self.context_size,
            self.embedding_size,
            self.head_count,
            self.layer_count,
        )
        if min(sizes) < 1:
            raise ValueError(f"Hyperparameters must be positive: {self}")
        if self.embedding_size % self.head_count != 0:
            raise ShapeError(
                f"embedding_size ({self.embedding_size}) must be divisible by "
                f"head_count ({self.head_count})"
            )

    @property
    def head_size(self) -> int:
        return self.embedding_size // self.head_count


class TransformerStack:
    """
    Complete GPT language model.

    Example usage:
        params = HyperParameters(vocabulary_size=256, context_size=64,
                                 embedding_size=32, head_count=4, layer_count=2)
        model = TransformerStack(params, rng=np.random.default_rng(0))

        # Training-style call (no cache)
        logits = model.forward(np.array([[1, 2, 3]]))

        # Streaming: two calls see one continuous sequence
        model.forward(np.array([[1, 2]]), use_cache=True)
        model.forward(np.array([[3]]), use_cache=True)

    Attributes:
        hyper_parameters: Model shape
        tokenizer: Optional object with ``encode(text) -> Sequence[int]``
        token_embedding: Token table, shared with the output projection
        positional_embedding: Learned position table (context_size x d_model)
        blocks: Encoder blocks
        final_layer_norm: LayerNorm before the output projection
        state: One AttentionState per block
    """

    def __init__(
        self,
        hyper_parameters: HyperParameters,
        tokenizer=None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.hyper_parameters = hyper_parameters
        self.tokenizer = tokenizer
        params = hyper_parameters

        if rng is None:
            rng = np.random.default_rng()

        self.token_embedding = Embedding(
            params.vocabulary_size, params.embedding_size, rng=rng
        )
        self.positional_embedding = Embedding(
            params.context_size, params.embedding_size, rng=rng
        )

        self.blocks: List[EncoderBlock] = [
            EncoderBlock(
                params.embedding_size,
                params.head_count,
                ffn_hidden_dimension=params.ffn_hidden_size,
                dropout_rate=params.dropout_rate,
                causal=True,
                rng=rng,
            )
            for _ in range(params.layer_count)
        ]

        self.final_layer_norm = LayerNorm(params.embedding_size)

        self.state: List[AttentionState] = []
        self.reset_state()

        logger.info(
            "Built TransformerStack: %d layers, %d heads, d_model=%d, %d parameters",
            params.layer_count,
            params.head_count,
            params.embedding_size,
            self.count_parameters(),
        )

    # ------------------------------------------------------------------
    # Streaming state
    # ------------------------------------------------------------------

    def reset_state(self, batch_size: int = 1) -> None:
        """Start a new, independent sequence: clear every layer's cache."""
        params = self.hyper_parameters
        self.state = [
            AttentionState.empty(batch_size * params.head_count, params.head_size)
            for _ in self.blocks
        ]

    @property
    def cache_length(self) -> int:
        """Number of tokens already consumed by the streaming path."""
        return self.state[0].time_steps if self.state else 0

    # ------------------------------------------------------------------
    # Forward / backward
    # ------------------------------------------------------------------

    def forward(
        self,
        input_tokens: np.ndarray,
        use_cache: bool = False,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
        """
        Convert token ids to vocabulary logits.

        Args:
            input_tokens: Integer ids, shape (batch, seq)
            use_cache: Continue the sequence held in ``state`` (and extend it)
            training: Enables dropout
            rng: Random source for dropout

        Returns:
            Logits of shape (batch, seq, vocabulary_size) for the given tokens

        Raises:
            ShapeError: If the input is not rank 2 or the positions would run
                past context_size
            ValueError: If a token id is outside the vocabulary
        """
        params = self.hyper_parameters
        input_tokens = np.asarray(input_tokens)

        if input_tokens.ndim != 2:
            raise ShapeError(
                f"Expected token ids of shape (batch, seq), got {input_tokens.shape}"
            )
        if input_tokens.size and (
            input_tokens.min() < 0 or input_tokens.max() >= params.vocabulary_size
        ):
            raise ValueError(
                f"Token ids must be in [0, {params.vocabulary_size}), got range "
                f"[{input_tokens.min()}, {input_tokens.max()}]"
            )

        start = self.cache_length if use_cache else 0
        sequence_length = input_tokens.shape[1]
        if start + sequence_length > params.context_size:
            raise ShapeError(
                f"Positions {start}..{start + sequence_length - 1} exceed context "
                f"size {params.context_size}; reset the state first"
            )

        # An empty chunk continues nothing and leaves the state as it is
        if sequence_length == 0:
            return np.zeros((input_tokens.shape[0], 0, params.vocabulary_size))

        positions = np.arange(start, start + sequence_length)[np.newaxis, :]
        hidden_states = self.token_embedding.forward(
            input_tokens
        ) + self.positional_embedding.forward(positions)

        # Every layer's cache must stay the same length, even if a later layer raises
        snapshot = [(state.key, state.value) for state in self.state]
        try:
            for block, state in zip(self.blocks, self.state):
                hidden_states = block.forward(
                    hidden_states,
                    state=state if use_cache else None,
                    training=training,
                    rng=rng,
                )
        except Exception:
            for state, (key, value) in zip(self.state, snapshot):
                state.key, state.value = key, value
            raise

        hidden_states = self.final_layer_norm.forward(hidden_states)

        # Weight tying: the token table doubles as the output projection
        return self.token_embedding.project(hidden_states)

    def __call__(self, text: str) -> np.ndarray:
        """
        Encode ``text`` and feed it to the streaming path.

        Successive calls continue the same sequence until ``reset_state``.

        Returns:
            Logits of shape (1, len(tokens), vocabulary_size)
        """
        if self.tokenizer is None:
            raise ValueError("TransformerStack was built without a tokenizer")

        tokens = np.asarray(self.tokenizer.encode(text), dtype=np.int64)
        return self.forward(tokens[np.newaxis, :], use_cache=True)

    def backward(self, grad_logits: np.ndarray) -> Dict[str, np.ndarray]:
        """
        Compute gradients for all parameters after a forward pass.

        The token table collects gradient from both of its uses: the
        output projection and the input lookup.

        Args:
            grad_logits: Gradient w.r.t. the logits, shape (batch, seq, vocab)

        Returns:
            Dictionary mapping parameter names to gradients
        """
        grad_hidden, tied_gradient = self.token_embedding.project_backward(grad_logits)
        grad_hidden = self.final_layer_norm.backward(grad_hidden)

        for block in reversed(self.blocks):
            grad_hidden = block.backward(grad_hidden)

        # Token and positional embeddings are summed, so both see grad_hidden;
        # positions are shared across the batch
        self.positional_embedding.backward(np.sum(grad_hidden, axis=0, keepdims=True))
        self.token_embedding.backward(grad_hidden)
        self.token_embedding.embedding_gradient = (
            self.token_embedding.embedding_gradient + tied_gradient
        )

        return self.get_gradients()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(
        self,
        prompt_tokens: np.ndarray,
        max_new_tokens: int,
        temperature: float = 1.0,
        top_k: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
        """
        Generate tokens autoregressively using the KV cache.

        The prompt is consumed in one call; after that each step feeds only
        the newly sampled token. When the context is full, the cache is
        reset and re-primed with the most recent half-context.

        Args:
            prompt_tokens: Starting ids, shape (batch, prompt_length)
            max_new_tokens: Number of tokens to append
            temperature: 0 = greedy, 1 = sample the model distribution,
                         >1 = flatter distribution
            top_k: If set, sample only among the k most likely tokens
            rng: Random source for sampling

        Returns:
            Ids of shape (batch, prompt_length + max_new_tokens)
        """
        if rng is None:
            rng = np.random.default_rng()

        context_size = self.hyper_parameters.context_size
        generated = np.asarray(prompt_tokens, dtype=np.int64)

        self.reset_state(batch_size=generated.shape[0])
        logits = self.forward(generated[:, -context_size:], use_cache=True)

        for _ in range(max_new_tokens):
            next_token = self._sample(logits[:, -1, :], temperature, top_k, rng)
            generated = np.concatenate([generated, next_token], axis=1)

            if self.cache_length >= context_size:
                keep = max(context_size // 2, 1)
                logger.debug("Context full; re-priming cache with %d tokens", keep)
                self.reset_state(batch_size=generated.shape[0])
                logits = self.forward(generated[:, -keep:], use_cache=True)
            else:
                logits = self.forward(next_token, use_cache=True)

        return generated

    def _sample(
        self,
        next_token_logits: np.ndarray,
        temperature: float,
        top_k: Optional[int],
        rng: np.random.Generator,
    ) -> np.ndarray:
        if temperature == 0:
            return np.argmax(next_token_logits, axis=-1)[:, np.newaxis]

        next_token_logits = next_token_logits / temperature

        if top_k is not None and top_k < next_token_logits.shape[-1]:
            # Everything below the k-th largest logit is excluded
            kth_largest = np.sort(next_token_logits, axis=-1)[:, -top_k][:, np.newaxis]
            next_token_logits = np.where(
                next_token_logits < kth_largest, -np.inf, next_token_logits
            )

        probs = softmax(next_token_logits)

        next_token = np.zeros((probs.shape[0], 1), dtype=np.int64)
        for b in range(probs.shape[0]):
            next_token[b, 0] = rng.choice(probs.shape[-1], p=probs[b])
        return next_token

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Return all parameters (the arrays themselves, not copies)."""
        params = {
            "token_embedding.weight": self.token_embedding.weight,
            "positional_embedding.weight": self.positional_embedding.weight,
        }
        for i, block in enumerate(self.blocks):
            params.update(
                {f"blocks.{i}.{k}": v for k, v in block.get_parameters().items()}
            )
        params["final_layer_norm.gamma"] = self.final_layer_norm.gamma
        params["final_layer_norm.beta"] = self.final_layer_norm.beta
        return params

    def get_gradients(self) -> Dict[str, np.ndarray]:
        """Return gradients keyed like ``get_parameters``."""
        grads = {
            "token_embedding.weight": self.token_embedding.embedding_gradient,
            "positional_embedding.weight": self.positional_embedding.embedding_gradient,
        }
        for i, block in enumerate(self.blocks):
            grads.update({f"blocks.{i}.{k}": v for k, v in block.get_gradients().items()})
        grads["final_layer_norm.gamma"] = self.final_layer_norm.gamma_gradient
        grads["final_layer_norm.beta"] = self.final_layer_norm.beta_gradient
        return grads

    def count_parameters(self) -> int:
        """Total number of scalar parameters (the tied table counted once)."""
        return sum(param.size for param in self.get_parameters().values())


def cross_entropy_loss(
    logits: np.ndarray, targets: np.ndarray, ignore_index: Optional[int] = None
) -> float:
    """
    Average next-token cross-entropy.

    Args:
        logits: Shape (batch, seq, vocab)
        targets: Target ids, shape (batch, seq)
        ignore_index: Target value whose positions do not count (padding)

    Returns:
        Mean negative log-likelihood over the counted positions
    """
    vocab_size = logits.shape[-1]
    logits_flat = logits.reshape(-1, vocab_size)
    targets_flat = targets.reshape(-1)

    if ignore_index is None:
        counted = np.ones(targets_flat.shape, dtype=bool)
    else:
        counted = targets_flat != ignore_index
        if not np.any(counted):
            return 0.0
        # Ignored positions index a valid column and are dropped below
        targets_flat = np.where(counted, targets_flat, 0)

    # log-softmax, shifted for stability
    shifted = logits_flat - np.max(logits_flat, axis=-1, keepdims=True)
    log_probs = shifted - np.log(np.sum(np.exp(shifted), axis=-1, keepdims=True))
    target_log_probs = log_probs[np.arange(targets_flat.size), targets_flat]

    return float(-np.sum(target_log_probs[counted]) / np.sum(counted))


def cross_entropy_loss_backward(
    logits: np.ndarray, targets: np.ndarray, ignore_index: Optional[int] = None
) -> np.ndarray:
    """
    Gradient of cross_entropy_loss w.r.t. the logits:

        d_loss/d_logits = (softmax(logits) - one_hot(targets)) / counted_positions
    """
    if ignore_index is None:
        counted = np.ones(targets.shape, dtype=bool)
    else:
        counted = targets != ignore_index
    num_counted = np.sum(counted)
    if num_counted == 0:
        return np.zeros_like(logits)

    grad = softmax(logits)
    batch_index, time_index = np.indices(targets.shape)
    grad[batch_index, time_index, np.where(counted, targets, 0)] -= 1.0

    return grad * counted[:, :, np.newaxis] / num_counted
