"""Dynamic graph building on handles.

Every operation on a PradOp computes its result immediately and returns a
PradResult wrapping a fresh handle. A handle feeds exactly one consumer;
a value needed by several consumers is branched first:

    x = PradOp(data)
    x_b = x.branch()
    y = x.sin().pradop.mul(x_b.cos().pradop)
    y.back(upstream)
    x.seed_gradient   # cos^2 - sin^2, both consumers summed

Backward reuses GraphDependencyVisitor and BackwardVisitor, so a value's
own backward only runs once every branch has delivered its gradient.
"""
from collections import deque
from numbers import Number

import numpy as np

from rmad import ops
from rmad.errors import PreconditionError
from rmad.function import Context
from rmad.node import GraphNode
from rmad.visitors import BackwardVisitor, GraphDependencyVisitor


class BranchStack:
    """Pre-made branches handed out in the order they were created."""

    def __init__(self, branches):
        self._branches = deque(branches)

    def pop(self):
        if not self._branches:
            raise PreconditionError("BranchStack is empty; the last consumer should use the original handle")
        return self._branches.popleft()

    def __len__(self):
        return len(self._branches)


class PradResult:
    def __init__(self, pradop):
        self.pradop = pradop

    @property
    def result(self):
        return self.pradop.tensor

    @property
    def gradient(self):
        return self.pradop.gradient

    def then(self, operation, *args, **kwargs):
        """Chain another operation, e.g. result.then(PradOp.exp)."""
        return operation(self.pradop, *args, **kwargs)

    def branch(self):
        return self.pradop.branch()

    def back(self, gradient=None):
        return self.pradop.back(gradient)


class PradOp(GraphNode):
    def __init__(self, tensor=None):
        super().__init__()
        self.tensor = None if tensor is None else self._as_array(tensor)
        self.function = None
        self.ctx = None
        self.origin = None
        self.branches = []
        self.consumed = False
        # gradient that arrived in the last backward pass
        self.gradient = None
        # leaves accumulate across backward passes until zero_grad
        self.seed_gradient = None

    @staticmethod
    def _as_array(value):
        value = np.asarray(value, dtype=np.float64)
        if value.ndim < 2:
            value = value.reshape(1, -1)
        return value

    @property
    def shape(self):
        self._require_tensor("shape")
        return self.tensor.shape

    @property
    def usage_count(self):
        """Consumers attached so far to this value, over all its branches."""
        root = self.origin or self
        return int(root.consumed) + sum(int(b.consumed) for b in root.branches)

    def _require_tensor(self, what):
        if self.tensor is None:
            raise PreconditionError(f"cannot {what}: the value has not been computed yet")

    def _consume(self):
        self._require_tensor("use this value")
        if self.consumed:
            raise PreconditionError("this handle is already consumed; call branch() for another consumer")
        self.consumed = True

    # Branching

    def branch(self):
        self._require_tensor("branch")
        root = self.origin or self
        branch = PradOp(root.tensor)
        branch.origin = root
        branch.backward_adjacent = [root]
        root.branches.append(branch)
        return branch

    def branch_stack(self, n):
        if n < 1:
            raise PreconditionError(f"branch_stack needs at least one branch, got {n}")
        return BranchStack([self.branch() for _ in range(n)])

    def fan_out(self, usage_count):
        """Handles for usage_count consumers: branches first, the original last."""
        if usage_count < 1:
            raise PreconditionError(f"usage_count must be >= 1, got {usage_count}")
        if usage_count == 1:
            return [self]
        if usage_count == 2:
            return [self.branch(), self]
        stack = self.branch_stack(usage_count - 1)
        return [stack.pop() for _ in range(usage_count - 1)] + [self]

    # Operations

    def _apply(self, function, *operands, **params):
        self._consume()
        args, adjacent = [self.tensor], [self]
        for operand in operands:
            if isinstance(operand, PradOp):
                operand._consume()
                args.append(operand.tensor)
                adjacent.append(operand)
            else:
                args.append(operand)
                adjacent.append(None)

        ctx = Context()
        out = PradOp(function.evaluate(ctx, *args, **params))
        out.function = function
        out.ctx = ctx
        out.backward_adjacent = adjacent
        return PradResult(out)

    def _same_shape(self, other):
        # constants given as plain numbers are expanded to this value's shape
        if isinstance(other, Number):
            return np.full(self.shape, float(other))
        if isinstance(other, PradOp):
            return other
        return self._as_array(other)

    def add(self, other):
        return self._apply(ops.MatrixAdd, self._same_shape(other))

    def sub(self, other):
        return self._apply(ops.MatrixSubtract, self._same_shape(other))

    def mul(self, other):
        return self._apply(ops.HadamardProduct, self._same_shape(other))

    def div(self, other):
        return self._apply(ops.MatrixDivide, self._same_shape(other))

    def matmul(self, other):
        return self._apply(ops.MatrixMultiply, other if isinstance(other, PradOp) else self._as_array(other))

    def hconcat(self, other):
        """Columns of self followed by columns of other."""
        return self._apply(ops.MatrixHorizontalConcatenate, other if isinstance(other, PradOp) else self._as_array(other))

    def vconcat(self, other):
        return self._apply(ops.MatrixVerticalConcatenate, other if isinstance(other, PradOp) else self._as_array(other))

    def scale(self, scalar):
        return self._apply(ops.MatrixMultiplyScalar, float(scalar))

    def exp(self):
        return self._apply(ops.Exp)

    def log(self):
        return self._apply(ops.Log)

    def sin(self):
        return self._apply(ops.Sin)

    def cos(self):
        return self._apply(ops.Cos)

    def square(self):
        return self._apply(ops.Square)

    def sqrt(self):
        return self._apply(ops.SquareRoot)

    def sigmoid(self):
        return self._apply(ops.Sigmoid)

    def tanh(self):
        return self._apply(ops.Tanh)

    def amplified_sigmoid(self):
        return self._apply(ops.AmplifiedSigmoid)

    def relu(self):
        return self._apply(ops.ReLU)

    def leaky_relu(self, alpha=0.01):
        return self._apply(ops.LeakyReLU, alpha=alpha)

    def gelu(self):
        return self._apply(ops.GELU)

    def swish(self):
        return self._apply(ops.Swish)

    def softmax(self):
        return self._apply(ops.Softmax)

    def layer_norm(self, epsilon=1e-5):
        return self._apply(ops.LayerNormalization, epsilon=epsilon)

    def sum(self, axis=None):
        return self._apply(ops.MatrixSum, axis=axis)

    def mean(self, axis=None):
        return self._apply(ops.MatrixMean, axis=axis)

    def transpose(self):
        return self._apply(ops.MatrixTranspose)

    def reshape(self, shape):
        return self._apply(ops.Reshape, shape=tuple(shape))

    def broadcast_to(self, shape):
        return self._apply(ops.BroadcastTo, shape=tuple(shape))

    # Backward

    def run_backward(self, gradient_lock):
        if self.accumulated_gradient is None:
            return [None] * len(self.backward_adjacent)
        self.gradient = self.accumulated_gradient

        if self.origin is not None:
            # a branch hands its gradient to the value it came from
            return [self.accumulated_gradient]

        if self.function is None:
            with gradient_lock:
                if self.seed_gradient is None:
                    self.seed_gradient = self.accumulated_gradient.copy()
                else:
                    self.seed_gradient = self.seed_gradient + self.accumulated_gradient
            return []

        return list(self.function.differentiate(self.ctx, self.accumulated_gradient))

    def back(self, gradient=None):
        """Backpropagate gradient (defaults to 1 for single-element values)
        through every handle this one was computed from."""
        self._require_tensor("run backward")
        if gradient is None:
            if self.tensor.size != 1:
                raise PreconditionError("Grad must be specified for non-scalar outputs")
            gradient = np.ones_like(self.tensor)

        GraphDependencyVisitor(self).traverse()
        visitor = BackwardVisitor(self)
        visitor.traverse(self._as_array(gradient))
        visitor.reset()
        return self

    def zero_grad(self):
        self.seed_gradient = None
        self.gradient = None

    def __repr__(self):
        name = self.function.__name__ if self.function else ("branch" if self.origin else "leaf")
        return f"PradOp({name}, shape={None if self.tensor is None else self.tensor.shape})"
