import unittest

import tracegrad
from tracegrad import core
from tracegrad.core import trace, trace_fn, VacuousGradError
import numpy as np
import os

DEBUG = os.environ.get("TRACEGRAD_DEBUG", 0)


def check_ordering(fn):
    produced = set()
    for instruction in fn.graph:
        for x in instruction.inputs:
            assert x in produced or x in fn.inputs, f"{x} used before produced"
        produced.update(instruction.outputs)


class TestGrad(unittest.TestCase):
    @staticmethod
    def run_grad(f, *args, argnums=None):
        grad_f = f.grad(argnums)
        grads = grad_f.eval()(*args)
        if DEBUG:
            print(f"{args=}")
            print(grad_f)
            print(f"{grads=}")
        check_ordering(grad_f)
        return grads

    def test_add(self):
        @trace
        def f(x, y):
            return (x + y).sum()

        x, y = [1.0, 2.0, 3.0], [10.0, 20.0, 30.0]
        np.testing.assert_allclose(f(x, y), 66.0)
        gx, gy = self.run_grad(f, x, y)
        np.testing.assert_allclose(gx, [1, 1, 1])
        np.testing.assert_allclose(gy, [1, 1, 1])

    def test_sub(self):
        @trace
        def f(x, y):
            return x - y

        np.testing.assert_allclose(f([5.0, 6.0], [2.0, 3.0]), [3, 3])
        gx, gy = self.run_grad(f, [5.0, 6.0], [2.0, 3.0])
        np.testing.assert_allclose(gx, [1, 1])
        np.testing.assert_allclose(gy, [-1, -1])

    def test_mul(self):
        @trace
        def f(x, y):
            return (x * y).sum()

        np.testing.assert_allclose(f([2.0, 3.0], [4.0, 5.0]), 23.0)
        gx, gy = self.run_grad(f, [2.0, 3.0], [4.0, 5.0])
        np.testing.assert_allclose(gx, [4, 5])
        np.testing.assert_allclose(gy, [2, 3])

    def test_div(self):
        @trace
        def f(x, y):
            return (x / y).sum()

        x, y = np.array([10.0, 20.0]), np.array([2.0, 5.0])
        gx, gy = self.run_grad(f, x, y)
        np.testing.assert_allclose(gx, 1 / y, rtol=1e-6)
        np.testing.assert_allclose(gy, -x / y**2, rtol=1e-6)

    def test_neg(self):
        @trace
        def f(x):
            return -x

        (gx,) = self.run_grad(f, [1.0, -2.0])
        np.testing.assert_allclose(gx, [-1, -1])

    def test_matmul(self):
        @trace
        def f(a, b):
            return (a @ b).sum()

        a = [[1.0, 2.0], [3.0, 4.0]]
        b = [[5.0, 6.0], [7.0, 8.0]]
        ga, gb = self.run_grad(f, a, b)
        np.testing.assert_allclose(ga, [[11, 15], [11, 15]])
        np.testing.assert_allclose(gb, [[4, 4], [6, 6]])

    def test_matmul_dot(self):
        @trace
        def f(a, b):
            return a @ b

        ga, gb = self.run_grad(f, [1.0, 2.0], [3.0, 4.0])
        np.testing.assert_allclose(ga, [3, 4])
        np.testing.assert_allclose(gb, [1, 2])

    def test_matmul_batched(self):
        @trace
        def f(a, b):
            return a @ b

        a = np.arange(12.0).reshape(2, 2, 3)
        b = np.arange(6.0).reshape(3, 2)
        ga, gb = self.run_grad(f, a, b)
        og = np.ones((2, 2, 2))
        np.testing.assert_allclose(ga, og @ b.T)
        np.testing.assert_allclose(gb, (np.swapaxes(a, -1, -2) @ og).sum(0))

    def test_matmul_scalar_operand(self):
        @trace
        def f(a, b):
            return (a @ b).sum()

        w = np.array([[1.0, 2.0], [3.0, 4.0]])
        ga, gb = self.run_grad(f, 2.0, w)
        np.testing.assert_allclose(ga, 10.0)
        np.testing.assert_allclose(gb, np.full((2, 2), 2.0))
        ga, gb = self.run_grad(f, w, 3.0)
        np.testing.assert_allclose(ga, np.full((2, 2), 3.0))
        np.testing.assert_allclose(gb, 10.0)

    def test_matmul_vector_matrix(self):
        @trace
        def f(a, b):
            return (a @ b).sum()

        ga, gb = self.run_grad(f, [1.0, 2.0], np.ones((2, 3)))
        np.testing.assert_allclose(ga, [3, 3])
        np.testing.assert_allclose(gb, [[1, 1, 1], [2, 2, 2]])
        ga, gb = self.run_grad(f, np.ones((3, 2)), [1.0, 2.0])
        np.testing.assert_allclose(ga, [[1, 2]] * 3)
        np.testing.assert_allclose(gb, [3, 3])

    def test_matmul_second_order(self):
        @trace
        def f(a, b):
            return (a @ b).sum()

        a, b = np.ones((4, 2)), np.arange(6.0).reshape(2, 3)
        ga, gb = f.grad(0).grad()(a, b)
        np.testing.assert_allclose(ga, np.zeros((4, 2)))
        np.testing.assert_allclose(gb, np.full((2, 3), 4.0))

        v = np.array([1.0, 2.0])
        gv, gb = f.grad(0).grad()(v, b)
        np.testing.assert_allclose(gv, [0, 0])
        np.testing.assert_allclose(gb, np.ones((2, 3)))

    def test_mean(self):
        @trace
        def f(x):
            return x.mean(1).sum()

        (gx,) = self.run_grad(f, [[1.0, 3.0, 2.0], [4.0, 0.0, 4.0]])
        np.testing.assert_allclose(gx, np.full((2, 3), 1 / 3), rtol=1e-6)

    def test_mean_keep_dims_and_full(self):
        @trace
        def f(x):
            return x.mean(0, keep_dims=True).sum() + x.mean()

        (gx,) = self.run_grad(f, np.ones((2, 4)))
        np.testing.assert_allclose(gx, np.full((2, 4), 1 / 2 + 1 / 8), rtol=1e-6)

    def test_max_splits_ties(self):
        @trace
        def f(x):
            return x.max(1)

        (gx,) = self.run_grad(f, [[1.0, 3.0, 2.0], [4.0, 0.0, 4.0]])
        np.testing.assert_allclose(gx, [[0, 1, 0], [0.5, 0, 0.5]])

    def test_max_keep_dims_and_full(self):
        @trace
        def f(x):
            return x.max(0, keep_dims=True)

        (gx,) = self.run_grad(f, [[1.0, 5.0], [2.0, 5.0]])
        np.testing.assert_allclose(gx, [[0, 0.5], [1, 0.5]])

        @trace
        def g(x):
            return x.max()

        (gx,) = self.run_grad(g, [[1.0, 5.0], [2.0, 0.0]])
        np.testing.assert_allclose(gx, [[0, 1], [0, 0]])

    def test_sum_axes(self):
        @trace
        def f(x):
            return x.sum((0, 2)) * x.sum((0, 2))

        x = np.arange(24.0).reshape(2, 3, 4)
        (gx,) = self.run_grad(f, x)
        s = x.sum((0, 2))
        np.testing.assert_allclose(gx, np.broadcast_to((2 * s)[None, :, None], x.shape))

    def test_relu(self):
        @trace
        def f(x):
            return x.relu()

        (gx,) = self.run_grad(f, [1.0, -2.0, 0.0, 3.0])
        np.testing.assert_allclose(gx, [1, 0, 0, 1])

    def test_exp_log(self):
        @trace
        def f(x):
            return x.exp() + x.log()

        x = np.array([0.5, 1.0, 2.0])
        (gx,) = self.run_grad(f, x)
        np.testing.assert_allclose(gx, np.exp(x) + 1 / x, rtol=1e-6)

    def test_transpose_reshape_broadcast(self):
        @trace
        def f(x, w):
            y = x.transpose(0, 1).reshape((6,)) * w
            return y.broadcast((4, 6)).sum()

        x = np.arange(6.0).reshape(2, 3)
        w = np.arange(6.0)
        gx, gw = self.run_grad(f, x, w)
        self.assertEqual(gx.shape, (2, 3))
        np.testing.assert_allclose(gx, 4 * w.reshape(3, 2).T)
        np.testing.assert_allclose(gw, 4 * x.T.reshape(6))

    def test_shape_round_trips(self):
        @trace
        def f(x, like):
            return x.reshape((3, 4)).reshape_like(like).broadcast_like(x.broadcast((5, 12)))

        x, like = np.ones(12), np.zeros(12)
        gx, glike = self.run_grad(f, x, like)
        self.assertEqual(gx.shape, x.shape)
        np.testing.assert_allclose(gx, np.full(12, 5.0))
        np.testing.assert_allclose(glike, np.zeros(12))

    def test_broadcasting_binary_reduces_back(self):
        @trace
        def f(x, b):
            return x * b + b

        x = np.arange(6.0).reshape(2, 3)
        b = np.array([1.0, 2.0, 3.0])
        gx, gb = self.run_grad(f, x, b)
        np.testing.assert_allclose(gx, np.broadcast_to(b, (2, 3)))
        np.testing.assert_allclose(gb, x.sum(0) + 2)

        @trace
        def g(x, c):
            return x / c

        gx, gc = self.run_grad(g, x, np.array([[2.0], [4.0]]))
        np.testing.assert_allclose(gx, [[0.5] * 3, [0.25] * 3])
        np.testing.assert_allclose(gc, [[-(0 + 1 + 2) / 4], [-(3 + 4 + 5) / 16]])

    def test_scalar_operands(self):
        @trace
        def f(x):
            return (2 * x - 1) / 4 + 3

        (gx,) = self.run_grad(f, [1.0, 2.0])
        np.testing.assert_allclose(gx, [0.5, 0.5])

    def test_accumulation(self):
        @trace
        def f(x):
            return x * 3 + x.exp() + x

        x = np.array([0.0, 1.0])
        (gx,) = self.run_grad(f, x)
        np.testing.assert_allclose(gx, 4 + np.exp(x), rtol=1e-6)

    def test_unused_input_is_zero(self):
        @trace
        def f(x, y):
            return x * x

        gx, gy = self.run_grad(f, [1.0, 2.0], np.ones((2, 3)))
        np.testing.assert_allclose(gx, [2, 4])
        self.assertEqual(gy.shape, (2, 3))
        np.testing.assert_array_equal(gy, np.zeros((2, 3)))

    def test_higher_order(self):
        @trace
        def f(x):
            return (x * x).sum()

        df = f.grad()
        np.testing.assert_allclose(df([3.0, 5.0]), [6, 10])
        ddf = df.grad()
        np.testing.assert_allclose(ddf([3.0, 5.0]), [2, 2])
        check_ordering(ddf)

    def test_higher_order_through_reductions(self):
        @trace
        def f(x):
            return (x * x * x).mean()

        x = np.array([1.0, 2.0, 4.0])
        np.testing.assert_allclose(f.grad()(x), x**2, rtol=1e-6)
        np.testing.assert_allclose(f.grad().grad()(x), 2 * x, rtol=1e-6)
        np.testing.assert_allclose(f.grad().grad().grad()(x), [2, 2, 2], rtol=1e-6)

    def test_multiple_outputs(self):
        @trace
        def f(x, y):
            return x * y, x.sum()

        x, y = np.array([1.0, 2.0]), np.array([3.0, 4.0])
        outs = f.eval()(x, y)
        self.assertEqual(len(outs), 2)
        np.testing.assert_allclose(outs[0], x * y)
        np.testing.assert_allclose(outs[1], 3.0)
        gx, gy = self.run_grad(f, x, y)
        np.testing.assert_allclose(gx, y + 2)
        np.testing.assert_allclose(gy, x)

    def test_multiple_outputs_add_before_sum(self):
        @trace
        def f(x, y):
            return x * 1.0, y.sum()

        gx, gy = self.run_grad(f, [1.0, 2.0, 3.0], [1.0, 1.0])
        np.testing.assert_allclose(gx, [1, 1, 1])
        np.testing.assert_allclose(gy, [3, 3])

    def test_value_and_grad_and_argnums(self):
        @trace
        def f(x, y):
            return (x * y).sum()

        loss, gy = f.value_and_grad(argnums=1)([2.0, 3.0], [4.0, 5.0])
        np.testing.assert_allclose(loss, 23.0)
        np.testing.assert_allclose(gy, [2, 3])
        gx = f.grad(0)([2.0, 3.0], [4.0, 5.0])
        np.testing.assert_allclose(gx, [4, 5])

    def test_vacuous_grad(self):
        def builder(s):
            x = s.input()
            return [x], ()

        f = trace_fn(builder)
        self.assertEqual(f.eval()([1.0]), ())
        with self.assertRaises(VacuousGradError):
            f.grad()

    def test_grad_does_not_touch_forward(self):
        @trace
        def f(x):
            return x.exp().sum()

        n = len(f.graph)
        outputs = f.outputs
        g = f.grad()
        self.assertGreater(len(g.graph), n)
        self.assertEqual(len(f.graph), n)
        self.assertEqual(f.outputs, outputs)
        self.assertEqual(g.inputs, f.inputs)
        np.testing.assert_allclose(f([0.0, 0.0]), 2.0)
        np.testing.assert_allclose(f.grad()([0.0]), [1.0])

    def test_float64(self):
        @trace(dtype=tracegrad.float64)
        def f(x):
            return (x * x).sum()

        g = f.grad()([0.1, 0.2])
        self.assertEqual(g.dtype, np.float64)
        np.testing.assert_allclose(g, [0.2, 0.4], rtol=1e-12)

    def test_explicit_builder(self):
        def builder(s):
            x, w = s.input(), s.input()
            y = s.mul(x, w)
            return [x.id, w.id], s.sum(y, axis=(), keep_dims=False)

        f = trace_fn(builder)
        gx, gw = self.run_grad(f, [1.0, 2.0], [3.0, 4.0])
        np.testing.assert_allclose(gx, [3, 4])
        np.testing.assert_allclose(gw, [1, 2])


if __name__ == "__main__":
    unittest.main()
