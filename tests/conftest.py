"""
Shared fixtures for the streamgpt test suite.
"""

import numpy as np
import pytest


def _numerical_gradient(loss_fn, array: np.ndarray, epsilon: float = 1e-6) -> np.ndarray:
    """
    Central finite differences of a scalar ``loss_fn()`` w.r.t. ``array``.

    ``array`` is perturbed in place, one entry at a time, and restored.
    """
    gradient = np.zeros_like(array)
    for index in np.ndindex(array.shape):
        original = array[index]

        array[index] = original + epsilon
        loss_plus = loss_fn()
        array[index] = original - epsilon
        loss_minus = loss_fn()
        array[index] = original

        gradient[index] = (loss_plus - loss_minus) / (2 * epsilon)
    return gradient


@pytest.fixture
def numerical_gradient():
    """Finite-difference gradient checker."""
    return _numerical_gradient


@pytest.fixture
def rng():
    """Seeded random generator so every test is reproducible."""
    return np.random.default_rng(1234)
