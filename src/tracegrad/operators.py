from tracegrad.core import (
    Operator,
    InitOperator,
    UnaryOperator,
    BinaryOperator,
    ReduceOperator,
    ShapeOperator,
    GradMaskOperator,
    OperatorSet,
    TraceTensor,
    normalize_axis,
)


# --------------
# Operator
# --------------

operator_set = OperatorSet()

# -----------------------
# Init
# -----------------------


@operator_set.register("input")
class Input(InitOperator):
    def eval(self, ctx, instruction):
        # value is bound by the caller before the graph runs
        (y,) = instruction.outputs
        ctx.get(y)


@operator_set.register("constant")
class Constant(InitOperator):
    def args_fixer(self, *, value):
        if not isinstance(value, TraceTensor.PYTHON_TYPES):
            raise TypeError(f"constant only holds Python scalars, got {type(value).__name__}")
        return (), dict(value=float(value))


# -----------------------
# Unary
# -----------------------


@operator_set.register("neg")
class Neg(UnaryOperator):
    def vjp(self, cotangents, x, y):
        (gL_y,) = cotangents
        return [-gL_y]


@operator_set.register("exp")
class Exp(UnaryOperator):
    def vjp(self, cotangents, x, y):
        (gL_y,) = cotangents
        return [gL_y * x.exp()]


@operator_set.register("log")
class Log(UnaryOperator):
    def vjp(self, cotangents, x, y):
        (gL_y,) = cotangents
        return [gL_y * (1 / x)]


@operator_set.register("relu")
class ReLU(UnaryOperator):
    def vjp(self, cotangents, x, y):
        (gL_y,) = cotangents
        return [gL_y * x.relu_grad_mask()]


@operator_set.register("relu_grad_mask")
class ReLUGradMask(GradMaskOperator):
    def args_fixer(self, x):
        return (x,), {}


@operator_set.register("max_grad_mask")
class MaxGradMask(GradMaskOperator):
    """1 where x equals the broadcast maximum y, 0 elsewhere."""

    def args_fixer(self, x, y):
        return (x, y), {}


# -----------------------
# Binary
# -----------------------


@operator_set.register("add")
class Add(BinaryOperator):
    def vjp(self, cotangents, x, w, y):
        (gL_y,) = cotangents
        return [self.unbroadcast(gL_y, x), self.unbroadcast(gL_y, w)]


@operator_set.register("sub")
class Sub(BinaryOperator):
    def vjp(self, cotangents, x, w, y):
        (gL_y,) = cotangents
        return [self.unbroadcast(gL_y, x), self.unbroadcast(-gL_y, w)]


@operator_set.register("mul")
class Mul(BinaryOperator):
    def vjp(self, cotangents, x, w, y):
        (gL_y,) = cotangents
        return [self.unbroadcast(gL_y * w, x), self.unbroadcast(gL_y * x, w)]


@operator_set.register("div")
class Div(BinaryOperator):
    def vjp(self, cotangents, x, w, y):
        (gL_y,) = cotangents
        gL_x = gL_y * (1 / w)
        gL_w = gL_y * (-x / (w * w))
        return [self.unbroadcast(gL_x, x), self.unbroadcast(gL_w, w)]


@operator_set.register("matmul")
class MatMul(BinaryOperator):
    def vjp(self, cotangents, x, w, y):
        (gL_y,) = cotangents
        return [gL_y.matmul_grad_lhs(x, w), gL_y.matmul_grad_rhs(x, w)]


@operator_set.register("matmul_grad_lhs")
class MatMulGradLhs(Operator):
    """Gradient of matmul(x, w) w.r.t. x, shaped like x. x is only read for its shape."""

    def args_fixer(self, og, x, w):
        return (og, x, w), {}

    def vjp(self, cotangents, og, x, w, y):
        (gL_y,) = cotangents
        return [gL_y @ w, None, og.matmul_grad_rhs(gL_y, w)]


@operator_set.register("matmul_grad_rhs")
class MatMulGradRhs(Operator):
    """Gradient of matmul(x, w) w.r.t. w, shaped like w. w is only read for its shape."""

    def args_fixer(self, og, x, w):
        return (og, x, w), {}

    def vjp(self, cotangents, og, x, w, y):
        (gL_y,) = cotangents
        return [x @ gL_y, og.matmul_grad_lhs(x, gL_y), None]


# -----------------------
# Reduce
# -----------------------


@operator_set.register("sum")
class Sum(ReduceOperator):
    def vjp(self, cotangents, x, y, *, axis, keep_dims):
        (gL_y,) = cotangents
        gL_x = gL_y.reshape_for_broadcast(axis, keep_dims)
        return [gL_x.broadcast_like(x)]


@operator_set.register("mean")
class Mean(ReduceOperator):
    def vjp(self, cotangents, x, y, *, axis, keep_dims):
        (gL_y,) = cotangents
        count = x.session.broadcast_like(1.0, x).sum(axis, keep_dims)
        gL_x = (gL_y / count).reshape_for_broadcast(axis, keep_dims)
        return [gL_x.broadcast_like(x)]


@operator_set.register("max")
class Max(ReduceOperator):
    def vjp(self, cotangents, x, y, *, axis, keep_dims):
        (gL_y,) = cotangents
        gL_y = gL_y.reshape_for_broadcast(axis, keep_dims).broadcast_like(x)
        y = y.reshape_for_broadcast(axis, keep_dims).broadcast_like(x)
        locs = x.max_grad_mask(y)
        counts = locs.sum(axis, True).broadcast_like(x)
        return [gL_y * locs / counts]


# -----------------------
# Shape
# -----------------------


@operator_set.register("transpose")
class Transpose(ShapeOperator):
    def args_fixer(self, x, axis1, axis2):
        return (x,), dict(axis1=int(axis1), axis2=int(axis2))

    def vjp(self, cotangents, x, y, *, axis1, axis2):
        (gL_y,) = cotangents
        return [gL_y.transpose(axis1, axis2)]


@operator_set.register("transpose_default", aliases=["t"])
class TransposeDefault(ShapeOperator):
    def args_fixer(self, x):
        return (x,), {}

    def vjp(self, cotangents, x, y):
        (gL_y,) = cotangents
        return [gL_y.transpose_default()]


@operator_set.register("reshape")
class Reshape(ShapeOperator):
    def args_fixer(self, x, shape):
        return (x,), dict(shape=self.fix_shape(shape))

    def vjp(self, cotangents, x, y, *, shape):
        (gL_y,) = cotangents
        return [gL_y.reshape_like(x)]


@operator_set.register("reshape_like")
class ReshapeLike(ShapeOperator):
    def args_fixer(self, x, like):
        return (x, like), {}

    def vjp(self, cotangents, x, like, y):
        (gL_y,) = cotangents
        return [gL_y.reshape_like(x), None]


@operator_set.register("broadcast")
class Broadcast(ShapeOperator):
    def args_fixer(self, x, shape):
        return (x,), dict(shape=self.fix_shape(shape))

    def vjp(self, cotangents, x, y, *, shape):
        (gL_y,) = cotangents
        return [gL_y.reduce_to_like(x)]


@operator_set.register("broadcast_like")
class BroadcastLike(ShapeOperator):
    def args_fixer(self, x, like):
        return (x, like), {}

    def vjp(self, cotangents, x, like, y):
        (gL_y,) = cotangents
        return [gL_y.reduce_to_like(x), None]


@operator_set.register("reduce_to_like")
class ReduceToLike(ShapeOperator):
    """Sums away leading axes missing from `like` and axes where `like` has size 1."""

    def args_fixer(self, x, like):
        return (x, like), {}

    def vjp(self, cotangents, x, like, y):
        (gL_y,) = cotangents
        return [gL_y.broadcast_like(x), None]


@operator_set.register("reshape_for_broadcast")
class ReshapeForBroadcast(ShapeOperator):
    """Puts back the size-1 axes a reduction without keep_dims removed."""

    def args_fixer(self, x, axis=(), keep_dims=False):
        return (x,), dict(axis=normalize_axis(axis), keep_dims=bool(keep_dims))

    def vjp(self, cotangents, x, y, *, axis, keep_dims):
        (gL_y,) = cotangents
        return [gL_y.reshape_like(x)]
