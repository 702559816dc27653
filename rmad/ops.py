import math

import numpy as np

from rmad.errors import ShapeMismatchError
from rmad.function import Function
from rmad.tensor import check_same_shape


def _unbroadcast(grad, shape):
    """Sum grad back down to shape, undoing an explicit broadcast."""
    while grad.ndim > len(shape):
        grad = grad.sum(axis=0)
    for axis, size in enumerate(shape):
        if size == 1 and grad.shape[axis] != 1:
            grad = grad.sum(axis=axis, keepdims=True)
    return grad


# Binary, same shape only


class MatrixAdd(Function):
    """Addition operation implementing z = a + b

    Forward: z = a + b
    Backward: dz/da = 1, dz/db = 1

    Both inputs share the same derivative, so the incoming gradient is
    returned unchanged as a tied pair."""

    @staticmethod
    def forward(ctx, a, b):
        check_same_shape(a, b, "MatrixAdd inputs")
        ctx.save_for_backward()
        return a + b

    @staticmethod
    def backward(ctx, grad_output):
        return grad_output, grad_output


class MatrixSubtract(Function):
    """z = a - b, with dz/da = 1 and dz/db = -1"""

    @staticmethod
    def forward(ctx, a, b):
        check_same_shape(a, b, "MatrixSubtract inputs")
        ctx.save_for_backward()
        return a - b

    @staticmethod
    def backward(ctx, grad_output):
        return grad_output, -grad_output


class HadamardProduct(Function):
    """Elementwise multiplication implementing z = a * b

    Forward: z = a * b
    Backward: dz/da = b, dz/db = a (product rule)"""

    @staticmethod
    def forward(ctx, a, b):
        check_same_shape(a, b, "HadamardProduct inputs")
        # Need to save inputs for product rule in backward pass
        ctx.save_for_backward(a, b)
        return a * b

    @staticmethod
    def backward(ctx, grad_output):
        a, b = ctx.saved_tensors
        return grad_output * b, grad_output * a


class MatrixDivide(Function):
    """Elementwise division z = a / b

    Backward: dz/da = 1/b, dz/db = -a/b^2"""

    @staticmethod
    def forward(ctx, a, b):
        check_same_shape(a, b, "MatrixDivide inputs")
        ctx.save_for_backward(a, b)
        return a / b

    @staticmethod
    def backward(ctx, grad_output):
        a, b = ctx.saved_tensors
        return grad_output / b, -grad_output * a / (b * b)


# Shape-changing operations. Each one broadcasts only in the way its name says.


class MatrixMultiply(Function):
    """Matrix product z = a @ b

    Backward: dL/da = dL/dz @ b^T, dL/db = a^T @ dL/dz"""

    @staticmethod
    def forward(ctx, a, b):
        if a.ndim != 2 or b.ndim != 2 or a.shape[1] != b.shape[0]:
            raise ShapeMismatchError(
                f"MatrixMultiply: cannot multiply {a.shape} by {b.shape}, inner dimensions must agree")
        ctx.save_for_backward(a, b)
        return a @ b

    @staticmethod
    def backward(ctx, grad_output):
        a, b = ctx.saved_tensors
        return grad_output @ b.T, a.T @ grad_output


class MatrixAddBroadcasting(Function):
    """Adds a (1, cols) row vector to every row of a. The row's gradient is
    the column sums of the incoming gradient."""

    @staticmethod
    def forward(ctx, a, row):
        if row.ndim != 2 or row.shape[0] != 1 or row.shape[1] != a.shape[-1]:
            raise ShapeMismatchError(
                f"MatrixAddBroadcasting: expected a (1, {a.shape[-1]}) row, got {row.shape}")
        ctx.save_for_backward()
        return a + row

    @staticmethod
    def backward(ctx, grad_output):
        return grad_output, grad_output.sum(axis=0, keepdims=True)


class MatrixMultiplyScalar(Function):
    @staticmethod
    def forward(ctx, a, scalar):
        scalar = float(np.asarray(scalar).reshape(-1)[0])
        ctx.save_for_backward(scalar)
        return a * scalar

    @staticmethod
    def backward(ctx, grad_output):
        scalar, = ctx.saved_tensors
        return grad_output * scalar, None


class MatrixTranspose(Function):
    @staticmethod
    def forward(ctx, a):
        ctx.save_for_backward()
        return a.T

    @staticmethod
    def backward(ctx, grad_output):
        return grad_output.T


class MatrixHorizontalConcatenate(Function):
    """[a | b]; inputs must have the same number of rows."""

    @staticmethod
    def forward(ctx, a, b):
        if a.shape[0] != b.shape[0]:
            raise ShapeMismatchError(
                f"MatrixHorizontalConcatenate: row counts differ, {a.shape} and {b.shape}")
        ctx.save_for_backward(a.shape[1])
        return np.hstack([a, b])

    @staticmethod
    def backward(ctx, grad_output):
        split, = ctx.saved_tensors
        return grad_output[:, :split], grad_output[:, split:]


class MatrixVerticalConcatenate(Function):
    """[a ; b]; inputs must have the same number of columns."""

    @staticmethod
    def forward(ctx, a, b):
        if a.shape[1] != b.shape[1]:
            raise ShapeMismatchError(
                f"MatrixVerticalConcatenate: column counts differ, {a.shape} and {b.shape}")
        ctx.save_for_backward(a.shape[0])
        return np.vstack([a, b])

    @staticmethod
    def backward(ctx, grad_output):
        split, = ctx.saved_tensors
        return grad_output[:split], grad_output[split:]


class MatrixSum(Function):
    """Sum over axis (None for every element). Dimensions are kept so the
    result stays 2-D."""

    @staticmethod
    def forward(ctx, a, axis=None):
        axis = None if axis is None else int(axis)
        ctx.save_for_backward(a.shape)
        return np.sum(a, axis=axis, keepdims=True)

    @staticmethod
    def backward(ctx, grad_output):
        shape, = ctx.saved_tensors
        return np.broadcast_to(grad_output, shape).copy()


class MatrixMean(Function):
    @staticmethod
    def forward(ctx, a, axis=None):
        axis = None if axis is None else int(axis)
        count = a.size if axis is None else a.shape[axis]
        ctx.save_for_backward(a.shape, count)
        return np.mean(a, axis=axis, keepdims=True)

    @staticmethod
    def backward(ctx, grad_output):
        shape, count = ctx.saved_tensors
        return np.broadcast_to(grad_output / count, shape).copy()


class Reshape(Function):
    @staticmethod
    def forward(ctx, a, shape):
        ctx.save_for_backward(a.shape)
        return a.reshape(shape)

    @staticmethod
    def backward(ctx, grad_output):
        shape, = ctx.saved_tensors
        return grad_output.reshape(shape)


class BroadcastTo(Function):
    """Explicit broadcast; backward sums over the broadcast axes."""

    @staticmethod
    def forward(ctx, a, shape):
        ctx.save_for_backward(a.shape)
        try:
            return np.broadcast_to(a, shape).copy()
        except ValueError as e:
            raise ShapeMismatchError(f"BroadcastTo: cannot broadcast {a.shape} to {shape}") from e

    @staticmethod
    def backward(ctx, grad_output):
        shape, = ctx.saved_tensors
        return _unbroadcast(grad_output, shape)


# Elementwise activations


def _sigmoid(x):
    # exp(-log(1 + e^-x)) avoids overflow for large |x|
    return np.exp(-np.logaddexp(0.0, -x))


class Sigmoid(Function):
    """y = 1 / (1 + e^-x), dy/dx = y (1 - y)"""

    @staticmethod
    def forward(ctx, x):
        y = _sigmoid(x)
        ctx.save_for_backward(y)
        return y

    @staticmethod
    def backward(ctx, grad_output):
        y, = ctx.saved_tensors
        return grad_output * y * (1.0 - y)


AMPLIFIED_SIGMOID_BASE = math.pi - 2.0


class AmplifiedSigmoid(Function):
    """Sigmoid with base (pi - 2) instead of e

    Forward: y = 1 / (1 + (pi - 2)^-x)
    Backward: dy/dx = ln(pi - 2) y (1 - y)"""

    @staticmethod
    def forward(ctx, x):
        y = _sigmoid(x * math.log(AMPLIFIED_SIGMOID_BASE))
        ctx.save_for_backward(y)
        return y

    @staticmethod
    def backward(ctx, grad_output):
        y, = ctx.saved_tensors
        return grad_output * math.log(AMPLIFIED_SIGMOID_BASE) * y * (1.0 - y)


class Tanh(Function):
    @staticmethod
    def forward(ctx, x):
        y = np.tanh(x)
        ctx.save_for_backward(y)
        return y

    @staticmethod
    def backward(ctx, grad_output):
        y, = ctx.saved_tensors
        return grad_output * (1.0 - y * y)


class ReLU(Function):
    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        return np.maximum(x, 0.0)

    @staticmethod
    def backward(ctx, grad_output):
        x, = ctx.saved_tensors
        return grad_output * (x > 0)


class LeakyReLU(Function):
    """y = x for x > 0, alpha * x otherwise"""

    @staticmethod
    def forward(ctx, x, alpha=0.01):
        alpha = float(np.asarray(alpha).reshape(-1)[0])
        ctx.save_for_backward(x, alpha)
        return np.where(x > 0, x, alpha * x)

    @staticmethod
    def backward(ctx, grad_output):
        x, alpha = ctx.saved_tensors
        return grad_output * np.where(x > 0, 1.0, alpha), None


class Swish(Function):
    """swish(x) = x * sigmoid(x)

    d/dx = sigmoid(x) + x sigmoid(x) (1 - sigmoid(x))"""

    @staticmethod
    def forward(ctx, x):
        sigmoid = _sigmoid(x)
        ctx.save_for_backward(x, sigmoid)
        return x * sigmoid

    @staticmethod
    def backward(ctx, grad_output):
        x, sigmoid = ctx.saved_tensors
        return grad_output * (sigmoid + x * sigmoid * (1.0 - sigmoid))


GELU_COEFF = math.sqrt(2.0 / math.pi)


class GELU(Function):
    """Tanh approximation of GELU:
    0.5 x (1 + tanh(sqrt(2/pi) (x + 0.044715 x^3)))"""

    @staticmethod
    def forward(ctx, x):
        t = np.tanh(GELU_COEFF * (x + 0.044715 * x ** 3))
        ctx.save_for_backward(x, t)
        return 0.5 * x * (1.0 + t)

    @staticmethod
    def backward(ctx, grad_output):
        x, t = ctx.saved_tensors
        inner = GELU_COEFF * (1.0 + 3 * 0.044715 * x ** 2)
        return grad_output * (0.5 * (1.0 + t) + 0.5 * x * (1.0 - t * t) * inner)


class Exp(Function):
    @staticmethod
    def forward(ctx, x):
        y = np.exp(x)
        ctx.save_for_backward(y)
        return y

    @staticmethod
    def backward(ctx, grad_output):
        y, = ctx.saved_tensors
        return grad_output * y


class Log(Function):
    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        return np.log(x)

    @staticmethod
    def backward(ctx, grad_output):
        x, = ctx.saved_tensors
        return grad_output / x


class Sin(Function):
    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        return np.sin(x)

    @staticmethod
    def backward(ctx, grad_output):
        x, = ctx.saved_tensors
        return grad_output * np.cos(x)


class Cos(Function):
    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        return np.cos(x)

    @staticmethod
    def backward(ctx, grad_output):
        x, = ctx.saved_tensors
        return -grad_output * np.sin(x)


class Square(Function):
    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        return x * x

    @staticmethod
    def backward(ctx, grad_output):
        x, = ctx.saved_tensors
        return 2.0 * grad_output * x


class SquareRoot(Function):
    @staticmethod
    def forward(ctx, x):
        y = np.sqrt(x)
        ctx.save_for_backward(y)
        return y

    @staticmethod
    def backward(ctx, grad_output):
        y, = ctx.saved_tensors
        return grad_output / (2.0 * y)


# Row-wise operations


class Softmax(Function):
    """Row-wise softmax. The row max is subtracted before exponentiating.

    Backward, per row: dx_j = y_j (g_j - sum_k g_k y_k)"""

    @staticmethod
    def forward(ctx, x):
        shifted = x - x.max(axis=-1, keepdims=True)
        e = np.exp(shifted)
        y = e / e.sum(axis=-1, keepdims=True)
        ctx.save_for_backward(y)
        return y

    @staticmethod
    def backward(ctx, grad_output):
        y, = ctx.saved_tensors
        return y * (grad_output - np.sum(grad_output * y, axis=-1, keepdims=True))


class LayerNormalization(Function):
    """Normalizes each row to zero mean and unit variance. Scale and shift
    are left to HadamardProduct / MatrixAddBroadcasting downstream."""

    @staticmethod
    def forward(ctx, x, epsilon=1e-5):
        epsilon = float(np.asarray(epsilon).reshape(-1)[0])
        mean = x.mean(axis=-1, keepdims=True)
        var = x.var(axis=-1, keepdims=True)
        inv_std = 1.0 / np.sqrt(var + epsilon)
        x_hat = (x - mean) * inv_std
        ctx.save_for_backward(x_hat, inv_std)
        return x_hat

    @staticmethod
    def backward(ctx, grad_output):
        x_hat, inv_std = ctx.saved_tensors
        n = x_hat.shape[-1]
        dx = (inv_std / n) * (
            n * grad_output
            - grad_output.sum(axis=-1, keepdims=True)
            - x_hat * np.sum(grad_output * x_hat, axis=-1, keepdims=True)
        )
        return dx, None


OPERATIONS = {cls.__name__: cls for cls in (
    MatrixAdd, MatrixSubtract, HadamardProduct, MatrixDivide,
    MatrixMultiply, MatrixAddBroadcasting, MatrixMultiplyScalar, MatrixTranspose,
    MatrixHorizontalConcatenate, MatrixVerticalConcatenate,
    MatrixSum, MatrixMean, Reshape, BroadcastTo,
    Sigmoid, AmplifiedSigmoid, Tanh, ReLU, LeakyReLU, Swish, GELU,
    Exp, Log, Sin, Cos, Square, SquareRoot,
    Softmax, LayerNormalization,
)}
