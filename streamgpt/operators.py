"""
Differentiable Tensor Primitives

Each primitive comes as a forward/backward pair of pure functions. The
backward function is a vector-Jacobian product: it takes the gradient of the
loss with respect to the forward output (the "upstream" gradient) plus the
forward inputs and/or output, and returns the gradient with respect to the
inputs. Nothing is cached here; layers that compose these primitives keep
whatever forward values their backward pass needs.

Functions:
    batched_matmul: Matrix product over leading batch axes, with transpose flags
    masked_softmax: Numerically stable softmax that can suppress positions
    softmax: masked_softmax without a mask
    gelu: Gaussian Error Linear Unit (feed-forward nonlinearity)

Gradient Functions:
    batched_matmul_backward
    masked_softmax_backward
    gelu_backward

Reference:
    - "Attention Is All You Need" (Vaswani et al., 2017) Section 3.2.1
    - "Gaussian Error Linear Units" (Hendrycks & Gimpel, 2016)
"""

from typing import Optional, Tuple

import numpy as np

from streamgpt.errors import ShapeError


def _matrix_view(tensor: np.ndarray, adjoint: bool) -> np.ndarray:
    """Swap the two matrix axes when ``adjoint`` is set."""
    return np.swapaxes(tensor, -1, -2) if adjoint else tensor


def _reduce_to_shape(gradient: np.ndarray, shape: Tuple[int, ...]) -> np.ndarray:
    """
    Sum a gradient over the batch axes that were broadcast in the forward pass.

    Args:
        gradient: Gradient with the broadcast (output) batch shape
        shape: Shape of the operand the gradient belongs to

    Returns:
        Gradient with exactly ``shape``
    """
    # Leading axes the operand never had
    extra_axes = gradient.ndim - len(shape)
    if extra_axes > 0:
        gradient = np.sum(gradient, axis=tuple(range(extra_axes)))

    # Axes where the operand had size 1 and was stretched
    stretched = tuple(
        axis
        for axis, size in enumerate(shape[:-2])
        if size == 1 and gradient.shape[axis] != 1
    )
    if stretched:
        gradient = np.sum(gradient, axis=stretched, keepdims=True)

    return gradient


def batched_matmul(
    left: np.ndarray,
    right: np.ndarray,
    adjoint_left: bool = False,
    adjoint_right: bool = False,
) -> np.ndarray:
    """
    Batched matrix multiplication.

    The last two axes of each operand are the matrix axes; every axis before
    them is a batch axis. Batch axes follow NumPy broadcasting.

    Args:
        left: Tensor of shape (..., m, k), or (..., k, m) if adjoint_left
        right: Tensor of shape (..., k, n), or (..., n, k) if adjoint_right
        adjoint_left: Transpose the matrix axes of ``left`` before multiplying
        adjoint_right: Transpose the matrix axes of ``right`` before multiplying

    Returns:
        Tensor of shape (..., m, n)

    Raises:
        ShapeError: If an operand has rank < 2, the batch axes are not
            compatible, or the inner dimensions differ.

    Example:
        >>> q = np.random.randn(2, 5, 8)
        >>> k = np.random.randn(2, 7, 8)
        >>> batched_matmul(q, k, adjoint_right=True).shape
        (2, 5, 7)
    """
    if left.ndim < 2 or right.ndim < 2:
        raise ShapeError(
            f"batched_matmul needs rank >= 2 operands, got shapes "
            f"{left.shape} and {right.shape}"
        )

    left_matrix = _matrix_view(left, adjoint_left)
    right_matrix = _matrix_view(right, adjoint_right)

    if left_matrix.shape[-1] != right_matrix.shape[-2]:
        raise ShapeError(
            f"Inner dimensions do not match: {left.shape} "
            f"(adjoint={adjoint_left}) @ {right.shape} (adjoint={adjoint_right})"
        )

    try:
        np.broadcast_shapes(left_matrix.shape[:-2], right_matrix.shape[:-2])
    except ValueError as error:
        raise ShapeError(
            f"Incompatible batch axes: {left.shape[:-2]} and {right.shape[:-2]}"
        ) from error

    return np.matmul(left_matrix, right_matrix)


def batched_matmul_backward(
    upstream_gradient: np.ndarray,
    left: np.ndarray,
    right: np.ndarray,
    adjoint_left: bool = False,
    adjoint_right: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gradient of batched_matmul with respect to both operands.

    With G the upstream gradient and L, R the operands as passed to the
    forward call, the four flag combinations are:

        C = L R      : dL = G R^T     dR = L^T G
        C = L R^T    : dL = G R       dR = G^T L
        C = L^T R    : dL = R G^T     dR = L G
        C = L^T R^T  : dL = R^T G^T   dR = G^T L^T

    Args:
        upstream_gradient: Gradient w.r.t. the forward output, shape (..., m, n)
        left: Left operand of the forward call
        right: Right operand of the forward call
        adjoint_left: Flag used in the forward call
        adjoint_right: Flag used in the forward call

    Returns:
        d_left: Gradient w.r.t. ``left`` (same shape as ``left``)
        d_right: Gradient w.r.t. ``right`` (same shape as ``right``)
    """
    g = upstream_gradient

    if not adjoint_left:
        if not adjoint_right:
            d_left = batched_matmul(g, right, adjoint_right=True)
            d_right = batched_matmul(left, g, adjoint_left=True)
        else:
            d_left = batched_matmul(g, right)
            d_right = batched_matmul(g, left, adjoint_left=True)
    else:
        if not adjoint_right:
            d_left = batched_matmul(right, g, adjoint_right=True)
            d_right = batched_matmul(left, g)
        else:
            d_left = batched_matmul(right, g, adjoint_left=True, adjoint_right=True)
            d_right = batched_matmul(g, left, adjoint_left=True, adjoint_right=True)

    return _reduce_to_shape(d_left, left.shape), _reduce_to_shape(d_right, right.shape)


def masked_softmax(
    logits: np.ndarray, mask: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Softmax along the last axis with an optional binary mask.

    Algorithm:
        1. Subtract the per-row maximum (over permitted entries) so exp()
           cannot overflow
        2. Exponentiate
        3. Multiply by the mask (1 = attend, 0 = suppress)
        4. Divide by the row sum

    A row whose mask suppresses every entry would be 0/0; it is returned as
    an all-zero row instead of NaN.

    Args:
        logits: Array of shape (..., n)
        mask: Optional array broadcastable to ``logits`` (bool or 0/1 floats).
              None behaves like an all-ones mask.

    Returns:
        Array of the same shape as ``logits``; each permitted row sums to 1.

    Raises:
        ShapeError: If the mask does not broadcast to the logits' shape.
    """
    if mask is None:
        max_logit = np.max(logits, axis=-1, keepdims=True)
        exponentials = np.exp(logits - max_logit)
        return exponentials / np.sum(exponentials, axis=-1, keepdims=True)

    try:
        mask = np.broadcast_to(np.asarray(mask, dtype=logits.dtype), logits.shape)
    except ValueError as error:
        raise ShapeError(
            f"Mask of shape {np.shape(mask)} does not broadcast to logits "
            f"of shape {logits.shape}"
        ) from error

    permitted = mask > 0

    # Rows with nothing permitted have max = -inf; shift those by 0 instead
    max_logit = np.max(np.where(permitted, logits, -np.inf), axis=-1, keepdims=True)
    max_logit = np.where(np.isfinite(max_logit), max_logit, 0.0)

    # exp(-inf) = 0 keeps suppressed entries from overflowing before the mask
    exponentials = np.exp(np.where(permitted, logits - max_logit, -np.inf)) * mask
    totals = np.sum(exponentials, axis=-1, keepdims=True)

    return np.divide(
        exponentials, totals, out=np.zeros_like(exponentials), where=totals > 0
    )


def masked_softmax_backward(
    upstream_gradient: np.ndarray, softmax_output: np.ndarray
) -> np.ndarray:
    """
    Gradient of masked_softmax with respect to the logits.

    For output y and upstream gradient s:

        d_logits = (s - sum(s * y, axis=-1)) * y

    Suppressed positions have y = 0 and therefore receive no gradient; the
    mask itself is a constant and has no gradient.

    Args:
        upstream_gradient: Gradient w.r.t. the softmax output
        softmax_output: Output of the forward call

    Returns:
        Gradient w.r.t. the logits, same shape as ``softmax_output``
    """
    weighted_sum = np.sum(upstream_gradient * softmax_output, axis=-1, keepdims=True)
    return (upstream_gradient - weighted_sum) * softmax_output


def softmax(logits: np.ndarray) -> np.ndarray:
    """Softmax along the last axis (masked_softmax with no mask)."""
    return masked_softmax(logits)


def gelu(x: np.ndarray) -> np.ndarray:
    """
    GELU activation, tanh approximation (as in GPT-2):

        GELU(x) = 0.5 * x * (1 + tanh(sqrt(2/pi) * (x + 0.044715 * x^3)))
    """
    inner = np.sqrt(2.0 / np.pi) * (x + 0.044715 * np.power(x, 3))
    return 0.5 * x * (1.0 + np.tanh(inner))


def gelu_backward(upstream_gradient: np.ndarray, x: np.ndarray) -> np.ndarray:
    """
    Gradient of gelu with respect to its input.

    d(GELU)/dx = 0.5 * (1 + tanh(z)) + 0.5 * x * (1 - tanh(z)^2) * dz/dx
    with z = sqrt(2/pi) * (x + 0.044715 * x^3).

    Args:
        upstream_gradient: Gradient w.r.t. the GELU output
        x: Input of the forward call

    Returns:
        Gradient w.r.t. x
    """
    sqrt_2_over_pi = np.sqrt(2.0 / np.pi)
    tanh_z = np.tanh(sqrt_2_over_pi * (x + 0.044715 * np.power(x, 3)))
    dz_dx = sqrt_2_over_pi * (1.0 + 3.0 * 0.044715 * np.power(x, 2))

    derivative = 0.5 * (1.0 + tanh_z) + 0.5 * x * (1.0 - tanh_z**2) * dz_dx
    return upstream_gradient * derivative
