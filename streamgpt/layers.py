"""
Neural Network Layers

The standard layers the attention stack is built from, each with a forward
pass, a backward pass and get_parameters/get_gradients accessors.
Layers cache the forward values they need on ``self`` so that ``backward``
only takes the upstream gradient.

Weight initialisation draws from an explicit ``numpy.random.Generator`` so
that a fixed seed reproduces a model exactly.

Classes:
    Linear: Fully connected layer (y = x W^T + b)
    LayerNorm: Layer normalization over the feature axis
    Embedding: Lookup table, also usable as a tied output projection
    Dropout: Inverted dropout driven by a caller-supplied RNG

Reference:
    - "Attention Is All You Need" (Vaswani et al., 2017)
    - "Layer Normalization" (Ba et al., 2016)
    - "Using the Output Embedding to Improve Language Models" (Press & Wolf, 2017)
"""

from typing import Optional, Tuple

import numpy as np


def _default_rng(rng: Optional[np.random.Generator]) -> np.random.Generator:
    return rng if rng is not None else np.random.default_rng()


class Linear:
    """
    Fully Connected (Linear) Layer.

    Computes y = x @ W^T + b over the last axis, so it applies unchanged to
    2-D (batch, features) and 3-D (batch, time, features) inputs; every time
    step shares the same weights.

    Attributes:
        weight: Weight matrix of shape (output_features, input_features)
        bias: Bias vector of shape (output_features,) or None
        weight_gradient: Gradient of the loss w.r.t. weight (after backward)
        bias_gradient: Gradient of the loss w.r.t. bias (after backward)

    Weight Initialization:
        Xavier/Glorot: W ~ N(0, 2 / (fan_in + fan_out))
    """

    def __init__(
        self,
        input_features: int,
        output_features: int,
        use_bias: bool = True,
        rng: Optional[np.random.Generator] = None,
    ):
        self.input_features = input_features
        self.output_features = output_features
        self.use_bias = use_bias

        weight_std = np.sqrt(2.0 / (input_features + output_features))
        self.weight = (
            _default_rng(rng).standard_normal((output_features, input_features))
            * weight_std
        )
        self.bias = np.zeros(output_features) if use_bias else None

        self.weight_gradient = None
        self.bias_gradient = None

        self._input_cache = None

    def forward(self, input_tensor: np.ndarray) -> np.ndarray:
        """
        Forward pass: y = x @ W^T + b

        Args:
            input_tensor: Input of shape (..., input_features)

        Returns:
            Output of shape (..., output_features)
        """
        self._input_cache = input_tensor

        output_tensor = input_tensor @ self.weight.T
        if self.use_bias:
            output_tensor = output_tensor + self.bias

        return output_tensor

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Backward pass.

        Forward: y = x @ W^T + b
            d_W = upstream^T @ x   (summed over every leading axis)
            d_b = sum(upstream)
            d_x = upstream @ W

        Args:
            upstream_gradient: Gradient of shape (..., output_features)

        Returns:
            Gradient w.r.t. the input, shape (..., input_features)
        """
        input_2d = self._input_cache.reshape(-1, self.input_features)
        upstream_2d = upstream_gradient.reshape(-1, self.output_features)

        self.weight_gradient = upstream_2d.T @ input_2d
        if self.use_bias:
            self.bias_gradient = np.sum(upstream_2d, axis=0)

        return upstream_gradient @ self.weight

    def get_parameters(self) -> dict:
        """Return dictionary of learnable parameters."""
        params = {"weight": self.weight}
        if self.use_bias:
            params["bias"] = self.bias
        return params

    def get_gradients(self) -> dict:
        """Return dictionary of parameter gradients."""
        grads = {"weight": self.weight_gradient}
        if self.use_bias:
            grads["bias"] = self.bias_gradient
        return grads


class LayerNorm:
    """
    Layer Normalization over the last (feature) axis.

    Formula:
        y = gamma * (x - mean) / sqrt(var + eps) + beta

    Used in pre-norm position inside every encoder block and once more
    before the output projection.

    Reference: "Layer Normalization" (Ba et al., 2016)
    """

    def __init__(self, normalized_shape: int, epsilon: float = 1e-5):
        self.normalized_shape = normalized_shape
        self.epsilon = epsilon

        self.gamma = np.ones(normalized_shape)
        self.beta = np.zeros(normalized_shape)

        self.gamma_gradient = None
        self.beta_gradient = None

        self._normalized_cache = None
        self._std_cache = None

    def forward(self, input_tensor: np.ndarray) -> np.ndarray:
        mean = np.mean(input_tensor, axis=-1, keepdims=True)
        variance = np.var(input_tensor, axis=-1, keepdims=True)
        std = np.sqrt(variance + self.epsilon)

        normalized = (input_tensor - mean) / std
        self._normalized_cache = normalized
        self._std_cache = std

        return self.gamma * normalized + self.beta

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Backward pass.

        With x_hat the normalized input and d_hat = upstream * gamma, the
        input gradient collapses to:

            d_x = (d_hat - mean(d_hat) - x_hat * mean(d_hat * x_hat)) / std

        Args:
            upstream_gradient: Gradient w.r.t. the layer output

        Returns:
            Gradient w.r.t. the layer input
        """
        normalized = self._normalized_cache
        batch_axes = tuple(range(upstream_gradient.ndim - 1))

        self.gamma_gradient = np.sum(upstream_gradient * normalized, axis=batch_axes)
        self.beta_gradient = np.sum(upstream_gradient, axis=batch_axes)

        d_normalized = upstream_gradient * self.gamma
        mean_d = np.mean(d_normalized, axis=-1, keepdims=True)
        mean_d_x = np.mean(d_normalized * normalized, axis=-1, keepdims=True)

        return (d_normalized - mean_d - normalized * mean_d_x) / self._std_cache

    def get_parameters(self) -> dict:
        """Return dictionary of learnable parameters."""
        return {"gamma": self.gamma, "beta": self.beta}

    def get_gradients(self) -> dict:
        """Return dictionary of parameter gradients."""
        return {"gamma": self.gamma_gradient, "beta": self.beta_gradient}


class Embedding:
    """
    Embedding Layer (Lookup Table).

    Maps integer ids to rows of a learned table. The same class serves the
    token embedding (vocabulary_size x d_model) and the learned positional
    embedding (context_size x d_model).

    The token table is also reused, transposed, as the output projection
    (weight tying): ``project`` maps hidden states to vocabulary logits
    with logits = h @ E^T.

    Attributes:
        weight: Table of shape (num_embeddings, embedding_dimension)
        embedding_gradient: Gradient from the lookup path (after backward)
    """

    def __init__(
        self,
        num_embeddings: int,
        embedding_dimension: int,
        rng: Optional[np.random.Generator] = None,
    ):
        self.num_embeddings = num_embeddings
        self.embedding_dimension = embedding_dimension

        scale = 1.0 / np.sqrt(embedding_dimension)
        self.weight = (
            _default_rng(rng).standard_normal((num_embeddings, embedding_dimension))
            * scale
        )

        self.embedding_gradient = None

        self._ids_cache = None
        self._hidden_cache = None

    def forward(self, ids: np.ndarray) -> np.ndarray:
        """
        Look up rows for ``ids``.

        Args:
            ids: Integer array of any shape, values in [0, num_embeddings)

        Returns:
            Array of shape ids.shape + (embedding_dimension,)
        """
        self._ids_cache = ids
        return self.weight[ids]

    def backward(self, upstream_gradient: np.ndarray) -> None:
        """
        Accumulate the lookup gradient into ``embedding_gradient``.

        Ids are discrete, so there is no input gradient to return. Repeated
        ids accumulate (np.add.at).
        """
        self.embedding_gradient = np.zeros_like(self.weight)
        np.add.at(
            self.embedding_gradient,
            self._ids_cache.reshape(-1),
            upstream_gradient.reshape(-1, self.embedding_dimension),
        )

    def project(self, hidden_states: np.ndarray) -> np.ndarray:
        """
        Tied output projection: (..., embedding_dimension) -> (..., num_embeddings).
        """
        self._hidden_cache = hidden_states
        return hidden_states @ self.weight.T

    def project_backward(
        self, upstream_gradient: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Backward pass of ``project``.

        Returns:
            d_hidden: Gradient w.r.t. the hidden states
            d_weight: Gradient w.r.t. the shared table from this path
        """
        hidden_2d = self._hidden_cache.reshape(-1, self.embedding_dimension)
        upstream_2d = upstream_gradient.reshape(-1, self.num_embeddings)

        d_weight = upstream_2d.T @ hidden_2d
        d_hidden = upstream_gradient @ self.weight

        return d_hidden, d_weight

    def get_parameters(self) -> dict:
        """Return dictionary of learnable parameters."""
        return {"weight": self.weight}

    def get_gradients(self) -> dict:
        """Return dictionary of parameter gradients."""
        return {"weight": self.embedding_gradient}


class Dropout:
    """
    Inverted dropout.

    At training time each entry is zeroed independently with probability
    ``rate`` and survivors are scaled by 1 / (1 - rate), so inference needs
    no rescaling. At inference time (or with rate 0) it is the identity.

    The random bits come from the ``rng`` passed to ``forward``; there is no
    hidden global random state.
    """

    def __init__(self, rate: float = 0.0):
        if not 0.0 <= rate < 1.0:
            raise ValueError(f"Dropout rate must be in [0, 1), got {rate}")
        self.rate = rate
        self._keep_mask = None

    def forward(
        self,
        input_tensor: np.ndarray,
        training: bool = False,
        rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
        if not training or self.rate == 0.0:
            self._keep_mask = None
            return input_tensor

        if rng is None:
            raise ValueError("Dropout at training time requires an explicit rng")

        keep_probability = 1.0 - self.rate
        self._keep_mask = (rng.random(input_tensor.shape) < keep_probability) / (
            keep_probability
        )
        return input_tensor * self._keep_mask

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        if self._keep_mask is None:
            return upstream_gradient
        return upstream_gradient * self._keep_mask
