import numpy as np

from rmad.errors import PreconditionError, ShapeMismatchError


class Context:
    """Stores intermediate values needed for gradient computation.
    Each operation invocation gets its own context during the forward pass."""

    def __init__(self):
        self._saved = None
        self.forwarded = False
        self.output_shape = None

    def save_for_backward(self, *arrays):
        """Save arrays that backward will need.
        Example: HadamardProduct saves both inputs for the product rule."""
        self._saved = arrays

    @property
    def saved_tensors(self):
        if self._saved is None:
            raise PreconditionError("backward called before forward: nothing was saved")
        return self._saved


class Function:
    """Base class for all differentiable operations.

    Subclasses implement forward(ctx, *inputs, **params) and
    backward(ctx, grad_output) as static methods on raw numpy arrays.
    backward returns one gradient per positional input, or None for an
    input that does not take a gradient (scalars, loss targets)."""

    @staticmethod
    def forward(ctx, *inputs, **params):
        raise NotImplementedError

    @staticmethod
    def backward(ctx, grad_output):
        raise NotImplementedError

    @classmethod
    def evaluate(cls, ctx, *inputs, **params):
        """Run the forward pass and mark the context as ready for backward."""
        out = cls.forward(ctx, *inputs, **params)

        # Ensure output is a 2-D float64 array
        out = np.asarray(out, dtype=np.float64)
        if out.ndim < 2:
            out = out.reshape(1, -1)

        ctx.forwarded = True
        ctx.output_shape = out.shape
        return out

    @classmethod
    def differentiate(cls, ctx, grad_output=None):
        """Gradients wrt each input, always as a tuple."""
        if not ctx.forwarded:
            raise PreconditionError(f"{cls.__name__}: backward called before forward")

        # For single-element outputs use a gradient of 1 if none is given
        if grad_output is None:
            if np.prod(ctx.output_shape) != 1:
                raise PreconditionError("Grad must be specified for non-scalar outputs")
            grad_output = np.ones(ctx.output_shape)

        grad_output = np.asarray(grad_output, dtype=np.float64)
        if grad_output.shape != ctx.output_shape:
            raise ShapeMismatchError(
                f"{cls.__name__}: upstream gradient has shape {grad_output.shape}, "
                f"output has shape {ctx.output_shape}")
        grads = cls.backward(ctx, grad_output)
        if not isinstance(grads, tuple):
            grads = (grads,)
        return grads
