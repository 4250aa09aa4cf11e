from tracegrad.core import Backend, DType, ShapeError, dtypes
from tracegrad.operators import operator_set

import math
import numpy as np
from typing import Tuple, Sequence


def broadcast_shapes(*shapes: Sequence[int]) -> Tuple[int, ...]:
    ndim = max(len(s) for s in shapes)
    padded = [(1,) * (ndim - len(s)) + tuple(s) for s in shapes]
    ret = []
    for i, dims in enumerate(zip(*padded)):
        sizes = set(d for d in dims if d != 1)
        if len(sizes) > 1:
            raise ShapeError(f"cannot broadcast {shapes}, axis {i} has sizes {dims}")
        ret += [sizes.pop() if sizes else 1]
    return tuple(ret)


def reduce_to_shape(x, shape: Sequence[int]):
    lead = x.ndim - len(shape)
    if lead < 0:
        raise ShapeError(f"reduce_to_like: cannot reduce {x.shape} to higher rank {tuple(shape)}")
    if lead > 0:
        x = np.sum(x, axis=tuple(range(lead)))
    axis = []
    for i, (d, t) in enumerate(zip(x.shape, shape)):
        if d == t:
            continue
        if t != 1:
            raise ShapeError(f"reduce_to_like: axis {i} of {x.shape} cannot reduce to {tuple(shape)}")
        axis += [i]
    if axis:
        x = np.sum(x, axis=tuple(axis), keepdims=True)
    return x


class NumpyBackend(Backend):
    dtype_map = {
        dtypes.float32: np.dtypes.Float32DType(),
        dtypes.float64: np.dtypes.Float64DType(),
    }

    def tensor(self, val, dtype: DType):
        return np.asarray(val, dtype=self.dtype_map[dtype])

    def full(self, shape, fill_value, dtype: DType):
        return np.full(shape, fill_value, dtype=self.dtype_map[dtype])


backend = NumpyBackend(operator_set)

backend.set_impl(operator_set.constant)(lambda self, *, value: np.array(value))
backend.set_impl(operator_set.neg)(lambda self, x: np.negative(x))
backend.set_impl(operator_set.exp)(lambda self, x: np.exp(x))
backend.set_impl(operator_set.log)(lambda self, x: np.log(x))
backend.set_impl(operator_set.relu)(lambda self, x: np.maximum(x, 0))
backend.set_impl(operator_set.relu_grad_mask)(lambda self, x: (x > 0).astype(x.dtype))
backend.set_impl(operator_set.max_grad_mask)(lambda self, x, y: (x == y).astype(x.dtype))
backend.set_impl(operator_set.add)(lambda self, x, w: np.add(x, w))
backend.set_impl(operator_set.sub)(lambda self, x, w: np.subtract(x, w))
backend.set_impl(operator_set.mul)(lambda self, x, w: np.multiply(x, w))
backend.set_impl(operator_set.div)(lambda self, x, w: np.divide(x, w))
backend.set_impl(operator_set.transpose)(lambda self, x, *, axis1, axis2: np.swapaxes(x, axis1, axis2))
backend.set_impl(operator_set.reshape)(lambda self, x, *, shape: np.reshape(x, shape))
backend.set_impl(operator_set.reshape_like)(lambda self, x, like: np.reshape(x, like.shape))
backend.set_impl(operator_set.broadcast)(lambda self, x, *, shape: np.broadcast_to(x, shape))
backend.set_impl(operator_set.broadcast_like)(lambda self, x, like: np.broadcast_to(x, like.shape))


@backend.set_impl(operator_set.transpose_default)
def transpose_default_impl(self, x):
    return np.swapaxes(x, -1, -2) if x.ndim > 1 else x


@backend.set_impl(operator_set.matmul)
def matmul_impl(self, x, w):
    if x.ndim == 0 or w.ndim == 0:
        return np.multiply(x, w)
    if x.ndim == 1 and w.ndim == 1:
        if x.shape[0] != w.shape[0]:
            raise ShapeError(f"matmul: dot of {x.shape} and {w.shape}")
        return np.dot(x, w)
    if x.ndim <= 2 and w.ndim <= 2:
        k_x = x.shape[-1]
        k_w = w.shape[0]
        if k_x != k_w:
            raise ShapeError(f"matmul: inner dimensions differ, {x.shape} and {w.shape}")
        return np.dot(x, w)
    if x.ndim < 2 or w.ndim < 2:
        raise ShapeError(f"matmul: batched operands need rank >= 2, got {x.shape} and {w.shape}")
    if x.shape[-1] != w.shape[-2]:
        raise ShapeError(f"matmul: inner dimensions differ, {x.shape} and {w.shape}")
    batch = broadcast_shapes(x.shape[:-2], w.shape[:-2])
    x = np.broadcast_to(x, batch + x.shape[-2:])
    w = np.broadcast_to(w, batch + w.shape[-2:])
    return np.matmul(x, w)


@backend.set_impl(operator_set.matmul_grad_lhs)
def matmul_grad_lhs_impl(self, og, x, w):
    if x.ndim == 0 or w.ndim == 0:
        return reduce_to_shape(og * w, x.shape)
    if x.ndim == 1 and w.ndim == 1:
        return og * w
    if x.ndim == 1 and w.ndim == 2:
        return np.dot(w, og)
    if x.ndim == 2 and w.ndim == 1:
        return np.outer(og, w)
    return reduce_to_shape(np.matmul(og, np.swapaxes(w, -1, -2)), x.shape)


@backend.set_impl(operator_set.matmul_grad_rhs)
def matmul_grad_rhs_impl(self, og, x, w):
    if x.ndim == 0 or w.ndim == 0:
        return reduce_to_shape(og * x, w.shape)
    if x.ndim == 1 and w.ndim == 1:
        return og * x
    if x.ndim == 1 and w.ndim == 2:
        return np.outer(x, og)
    if x.ndim == 2 and w.ndim == 1:
        return np.dot(x.T, og)
    return reduce_to_shape(np.matmul(np.swapaxes(x, -1, -2), og), w.shape)


@backend.set_impl(operator_set.sum)
def sum_impl(self, x, *, axis, keep_dims):
    if not axis:
        return np.sum(x)
    return np.sum(x, axis=axis, keepdims=keep_dims)


@backend.set_impl(operator_set.mean)
def mean_impl(self, x, *, axis, keep_dims):
    if not axis:
        return np.sum(x) / x.size
    count = math.prod(x.shape[a] for a in axis)
    return np.sum(x, axis=axis, keepdims=keep_dims) / count


@backend.set_impl(operator_set.max)
def max_impl(self, x, *, axis, keep_dims):
    if not axis:
        return np.max(x, initial=-np.inf)
    return np.max(x, axis=axis, keepdims=keep_dims, initial=-np.inf)


@backend.set_impl(operator_set.reduce_to_like)
def reduce_to_like_impl(self, x, like):
    return reduce_to_shape(x, like.shape)


@backend.set_impl(operator_set.reshape_for_broadcast)
def reshape_for_broadcast_impl(self, x, *, axis, keep_dims):
    if keep_dims or not axis:
        return x
    return np.expand_dims(x, tuple(sorted(axis)))
