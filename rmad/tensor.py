import numpy as np

from rmad.errors import ShapeMismatchError


def check_same_shape(a, b, what="operands"):
    """Raise if two arrays (or Tensors) differ in shape. Nothing broadcasts implicitly."""
    shape_a, shape_b = np.shape(a), np.shape(b)
    if shape_a != shape_b:
        raise ShapeMismatchError(f"{what} must have the same shape, got {shape_a} and {shape_b}")


class Tensor:
    """Dense float64 buffer with shape (rows, cols) or (depth, rows, cols).

    A Tensor is owned by whatever produced it. Consumers read it; only the
    owner mutates it in place (copy_from, accumulate, clear). Indexing a
    3-D tensor by depth gives a 2-D view onto the same memory, which is how
    per-layer weight slices stay bound to the buffer the optimizer updates."""

    def __init__(self, data):
        if isinstance(data, Tensor):
            data = data.data
        # asarray keeps views as views so slices share storage
        data = np.asarray(data, dtype=np.float64)
        if data.ndim == 0:
            data = data.reshape(1, 1)
        elif data.ndim == 1:
            data = data.reshape(1, -1)
        elif data.ndim > 3:
            raise ShapeMismatchError(f"Tensor supports 2 or 3 dimensions, got {data.ndim}")
        self.data = data

    @classmethod
    def zeros(cls, *shape):
        return cls(np.zeros(shape, dtype=np.float64))

    @classmethod
    def like(cls, other):
        return cls(np.zeros_like(np.asarray(other, dtype=np.float64)))

    @property
    def shape(self):
        return self.data.shape

    @property
    def rows(self):
        return self.data.shape[-2]

    @property
    def cols(self):
        return self.data.shape[-1]

    @property
    def depth(self):
        return self.data.shape[0] if self.data.ndim == 3 else 1

    def numpy(self):
        return self.data

    def copy(self):
        return Tensor(self.data.copy())

    # In-place mutation, for the owning node only

    def copy_from(self, other):
        other = np.asarray(other.data if isinstance(other, Tensor) else other, dtype=np.float64)
        check_same_shape(self.data, other, "copy source and destination")
        self.data[...] = other
        return self

    def accumulate(self, other):
        other = np.asarray(other.data if isinstance(other, Tensor) else other, dtype=np.float64)
        check_same_shape(self.data, other, "accumulated gradient and buffer")
        self.data += other
        return self

    def clear(self):
        self.data.fill(0.0)
        return self

    # Arithmetic returns new tensors

    def _binary(self, other, fn, what):
        if isinstance(other, (int, float)):
            return Tensor(fn(self.data, other))
        other = other.data if isinstance(other, Tensor) else np.asarray(other, dtype=np.float64)
        check_same_shape(self.data, other, what)
        return Tensor(fn(self.data, other))

    def __add__(self, other):
        return self._binary(other, np.add, "addends")

    def __sub__(self, other):
        return self._binary(other, np.subtract, "subtraction operands")

    def __mul__(self, other):
        return self._binary(other, np.multiply, "elementwise factors")

    __radd__ = __add__
    __rmul__ = __mul__

    def __neg__(self):
        return Tensor(-self.data)

    def __matmul__(self, other):
        other = other.data if isinstance(other, Tensor) else np.asarray(other, dtype=np.float64)
        if self.data.shape[-1] != other.shape[-2]:
            raise ShapeMismatchError(
                f"cannot multiply {self.data.shape} by {other.shape}: inner dimensions differ")
        return Tensor(self.data @ other)

    def __getitem__(self, index):
        return Tensor(self.data[index])

    def __array__(self, dtype=None, copy=None):
        if dtype is None:
            return self.data
        return self.data.astype(dtype)

    def __eq__(self, other):
        if not isinstance(other, Tensor):
            return NotImplemented
        return self.shape == other.shape and np.array_equal(self.data, other.data)

    __hash__ = object.__hash__

    def __repr__(self):
        return f"Tensor(shape={self.shape}, data={self.data})"
