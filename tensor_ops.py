"""Dense matrix helpers for the LSTM, all operating on 2-D float64 arrays."""

import numpy as np


class ShapeMismatchError(ValueError):
    pass


def _check_2d(*arrays):
    for a in arrays:
        if a.ndim != 2:
            raise ShapeMismatchError(f"Expected a 2-D matrix, got shape {a.shape}")


def _check_same_shape(a, b, op):
    _check_2d(a, b)
    if a.shape != b.shape:
        raise ShapeMismatchError(f"{op}: operands have different shapes {a.shape} and {b.shape}")


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def zeros(m, n):
    return np.zeros((m, n), dtype=np.float64)


def ones(m, n):
    return np.ones((m, n), dtype=np.float64)


def zeros_like(a):
    return np.zeros(a.shape, dtype=np.float64)


def ones_like(a):
    return np.ones(a.shape, dtype=np.float64)


def gaussian(m, n, scale=1.0):
    return scale * np.random.randn(m, n)


def one_hot(index, size):
    """Column vector [size, 1] with a single 1 at `index`."""
    if not 0 <= index < size:
        raise ShapeMismatchError(f"Index {index} out of range for one-hot of size {size}")
    x = zeros(size, 1)
    x[index, 0] = 1.0
    return x


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------

def matmul(a, b):
    _check_2d(a, b)
    if a.shape[1] != b.shape[0]:
        raise ShapeMismatchError(f"matmul: inner dimensions differ, {a.shape} x {b.shape}")
    return a @ b


def add(a, b):
    _check_same_shape(a, b, "add")
    return a + b


def subtract(a, b):
    _check_same_shape(a, b, "subtract")
    return a - b


def multiply(a, b):
    _check_same_shape(a, b, "multiply")
    return a * b


def transpose(a):
    _check_2d(a)
    return a.T


def vstack(*matrices):
    _check_2d(*matrices)
    n = matrices[0].shape[1]
    for mat in matrices[1:]:
        if mat.shape[1] != n:
            raise ShapeMismatchError(f"vstack: column counts differ, {n} and {mat.shape[1]}")
    return np.vstack(matrices)


def slice_rows(a, offset, length):
    _check_2d(a)
    if offset < 0 or length < 0 or offset + length > a.shape[0]:
        raise ShapeMismatchError(f"Rows {offset}:{offset + length} outside matrix of shape {a.shape}")
    return a[offset:offset + length].copy()


def clip(a, low, high):
    return np.clip(a, low, high)


# ---------------------------------------------------------------------------
# Activations
# ---------------------------------------------------------------------------

def sigmoid(a):
    return 1.0 / (1.0 + np.exp(-a))


def tanh(a):
    return np.tanh(a)


def softmax(v, temperature=1.0):
    """Column-wise softmax, shifted by the max logit."""
    _check_2d(v)
    e = np.exp((v - np.max(v, axis=0, keepdims=True)) / temperature)
    return e / np.sum(e, axis=0, keepdims=True)
