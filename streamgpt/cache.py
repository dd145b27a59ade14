"""
Incremental attention state (the KV cache).

During streaming decode only the newly supplied time steps are projected to
query/key/value; their keys and values are appended to the ones kept from
earlier calls, and the new queries attend over the whole history.

One AttentionState exists per encoder layer. The TransformerStack owns them
and lends each to exactly one layer call at a time; the state is not
thread-safe and concurrent calls against the same instance must be
serialized by the caller.

There is no maximum length and no automatic eviction. Long-running sessions
must call ``reset`` or ``truncate`` themselves.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from streamgpt.errors import ShapeError

logger = logging.getLogger(__name__)


class AttentionState:
    """
    Accumulated keys and values for one attention layer.

    Attributes:
        key: Cached keys, shape (generalized_batch, time_steps, head_dimension)
        value: Cached values, same shape as ``key``

    generalized_batch is batch * head_count when the state belongs to a
    multi-head layer. The time axis only grows through ``append``.
    """

    def __init__(self, key: np.ndarray, value: np.ndarray):
        if key.ndim != 3 or key.shape != value.shape:
            raise ShapeError(
                f"Cached key and value must share a rank-3 shape, got "
                f"{key.shape} and {value.shape}"
            )
        self.key = key
        self.value = value

    @classmethod
    def empty(
        cls, generalized_batch: int, head_dimension: int, dtype=np.float64
    ) -> "AttentionState":
        """Create a state with a zero-length time axis."""
        empty = np.zeros((generalized_batch, 0, head_dimension), dtype=dtype)
        return cls(key=empty, value=empty.copy())

    @property
    def time_steps(self) -> int:
        """Number of accumulated time steps."""
        return self.key.shape[1]

    @property
    def is_empty(self) -> bool:
        return self.time_steps == 0

    def extended(
        self, key: np.ndarray, value: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        The accumulated (key, value) this state would hold after appending,
        without changing the state.

        An empty state adopts the generalized batch of its first append, so a
        state built for batch size 1 can serve any batch size as long as it
        starts empty.

        Args:
            key: New keys, shape (generalized_batch, new_steps, head_dimension)
            value: New values, same shape as ``key``

        Returns:
            The accumulated (key, value), each with time_steps + new_steps steps.

        Raises:
            ShapeError: If the new slices disagree with each other or with the
                cache in rank, batch or head width.
        """
        if key.ndim != 3 or key.shape != value.shape:
            raise ShapeError(
                f"New key and value must share a rank-3 shape, got "
                f"{key.shape} and {value.shape}"
            )

        if key.shape[2] != self.key.shape[2]:
            raise ShapeError(
                f"Head width {key.shape[2]} does not match cached width "
                f"{self.key.shape[2]}"
            )

        if self.is_empty:
            cached_key = np.zeros((key.shape[0], 0, key.shape[2]), dtype=self.key.dtype)
            cached_value = cached_key
        elif key.shape[0] != self.key.shape[0]:
            raise ShapeError(
                f"Batch {key.shape[0]} does not match cached batch "
                f"{self.key.shape[0]}"
            )
        else:
            cached_key, cached_value = self.key, self.value

        return (
            np.concatenate([cached_key, key], axis=1),
            np.concatenate([cached_value, value], axis=1),
        )

    def commit(self, key: np.ndarray, value: np.ndarray) -> None:
        """Replace the cache with tensors obtained from ``extended``."""
        if key.ndim != 3 or key.shape != value.shape:
            raise ShapeError(
                f"Cached key and value must share a rank-3 shape, got "
                f"{key.shape} and {value.shape}"
            )
        grown = key.shape[1] - self.time_steps
        self.key = key
        self.value = value
        logger.debug("Attention state grew by %d steps to %d", grown, self.time_steps)

    def append(
        self, key: np.ndarray, value: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Append this call's keys and values along the time axis.

        Same contract as ``extended``, but the state keeps the result.
        """
        self.commit(*self.extended(key, value))
        return self.key, self.value

    def reset(self, generalized_batch: Optional[int] = None) -> None:
        """
        Clear the cache to a zero-length time axis.

        Args:
            generalized_batch: Batch size for the cleared cache (defaults to
                the current one)
        """
        if generalized_batch is None:
            generalized_batch = self.key.shape[0]
        self.key = np.zeros(
            (generalized_batch, 0, self.key.shape[2]), dtype=self.key.dtype
        )
        self.value = self.key.copy()
        logger.debug("Attention state reset")

    def truncate(self, max_time_steps: int) -> None:
        """Keep only the most recent ``max_time_steps`` steps."""
        if max_time_steps < 0:
            raise ValueError(f"max_time_steps must be >= 0, got {max_time_steps}")
        if self.time_steps <= max_time_steps:
            return

        dropped = self.time_steps - max_time_steps
        self.key = self.key[:, dropped:]
        self.value = self.value[:, dropped:]
        logger.debug("Attention state truncated by %d steps", dropped)
