class RmadError(Exception):
    """Base class for every error raised by the runtime."""


class ArchitectureError(RmadError):
    """The graph could not be built: bad architecture document, unknown
    operation type or a name that does not resolve to any binding."""


class ShapeMismatchError(RmadError, ValueError):
    """Two tensors that must agree on shape do not."""


class OperationNotFoundError(ArchitectureError, KeyError):
    """Lookup of an operation by id and coordinate found nothing."""

    def __str__(self):
        # KeyError quotes its message otherwise
        return Exception.__str__(self)


class PreconditionError(RmadError, RuntimeError):
    """A call arrived out of order, e.g. backward before forward or
    branching a value that has not been computed yet."""


class AggregateBackwardError(ExceptionGroup):
    """Failures collected from the independent subtrees of a concurrent
    backward traversal."""

    def derive(self, excs):
        return AggregateBackwardError(self.message, excs)
