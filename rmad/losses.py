"""Loss operations. Each takes (output, target[, params]) and produces a
(1, 1) loss; the target never receives a gradient."""
import numpy as np

from rmad.function import Function
from rmad.tensor import check_same_shape

EPSILON = 1e-15


class MeanSquaredErrorLoss(Function):
    """L = sum((y_hat - y)^2) / n over all n elements

    Backward: dL/dy_hat = 2 (y_hat - y) / n"""

    @staticmethod
    def forward(ctx, output, target):
        check_same_shape(output, target, "MeanSquaredErrorLoss output and target")
        diff = output - target
        ctx.save_for_backward(diff)
        return np.array([[np.sum(diff * diff) / diff.size]])

    @staticmethod
    def backward(ctx, grad_output):
        diff, = ctx.saved_tensors
        scale = float(np.sum(grad_output))
        return scale * 2.0 * diff / diff.size, None


class CategoricalCrossEntropyLoss(Function):
    """L = -sum(y log(y_hat + eps)) / rows

    Expects y_hat to be a probability distribution per row (e.g. Softmax
    output) and y one-hot or soft labels."""

    @staticmethod
    def forward(ctx, output, target):
        check_same_shape(output, target, "CategoricalCrossEntropyLoss output and target")
        ctx.save_for_backward(output, target)
        rows = output.shape[0]
        return np.array([[-np.sum(target * np.log(output + EPSILON)) / rows]])

    @staticmethod
    def backward(ctx, grad_output):
        output, target = ctx.saved_tensors
        scale = float(np.sum(grad_output))
        return scale * -target / (output + EPSILON) / output.shape[0], None


class BinaryCrossEntropyLoss(Function):
    """L = -mean(y log(y_hat + eps) + (1 - y) log(1 - y_hat + eps))"""

    @staticmethod
    def forward(ctx, output, target):
        check_same_shape(output, target, "BinaryCrossEntropyLoss output and target")
        ctx.save_for_backward(output, target)
        loss = target * np.log(output + EPSILON) + (1.0 - target) * np.log(1.0 - output + EPSILON)
        return np.array([[-np.mean(loss)]])

    @staticmethod
    def backward(ctx, grad_output):
        output, target = ctx.saved_tensors
        scale = float(np.sum(grad_output))
        grad = -(target / (output + EPSILON) - (1.0 - target) / (1.0 - output + EPSILON))
        return scale * grad / output.size, None


class HuberLoss(Function):
    """Quadratic near zero, linear beyond delta:

        0.5 d^2                   if |d| <= delta
        delta (|d| - 0.5 delta)   otherwise

    averaged over all elements, d = y_hat - y."""

    @staticmethod
    def forward(ctx, output, target, delta=1.0):
        check_same_shape(output, target, "HuberLoss output and target")
        delta = float(np.asarray(delta).reshape(-1)[0])
        diff = output - target
        quadratic = np.abs(diff) <= delta
        ctx.save_for_backward(diff, quadratic, delta)
        loss = np.where(quadratic, 0.5 * diff * diff, delta * (np.abs(diff) - 0.5 * delta))
        return np.array([[np.mean(loss)]])

    @staticmethod
    def backward(ctx, grad_output):
        diff, quadratic, delta = ctx.saved_tensors
        scale = float(np.sum(grad_output)) / diff.size
        grad = np.where(quadratic, diff, delta * np.sign(diff))
        return scale * grad, None, None


LOSSES = {cls.__name__: cls for cls in (
    MeanSquaredErrorLoss, CategoricalCrossEntropyLoss, BinaryCrossEntropyLoss, HuberLoss,
)}
