import threading

import numpy as np

from rmad.tensor import check_same_shape


class GraphNode:
    """State every node needs to take part in a backward traversal.

    backward_adjacent holds one entry per input, the node that produced that
    input, or None where the input is a weight, a constant or anything else
    that does not propagate further. dependency_counts maps a starting-point
    index to the number of gradient contributions that must arrive before
    the node may fire."""

    def __init__(self):
        self.backward_adjacent = []
        self.dependency_counts = {}
        self.visited_count = 0
        self.accumulated_gradient = None
        self.is_complete = False
        self.lock = threading.Lock()

    def receive_gradient(self, gradient):
        """Add one contribution. None counts as a contribution that carries
        no value (the consumer does not differentiate wrt this input)."""
        if gradient is None:
            return
        gradient = np.asarray(gradient, dtype=np.float64)
        if self.accumulated_gradient is None:
            self.accumulated_gradient = gradient.copy()
        else:
            check_same_shape(self.accumulated_gradient, gradient, f"gradients arriving at {self!r}")
            self.accumulated_gradient = self.accumulated_gradient + gradient

    def run_backward(self, gradient_lock):
        """Fire once every contribution has arrived. Returns the gradients
        for backward_adjacent, index for index."""
        raise NotImplementedError

    def reset(self):
        self.visited_count = 0
        self.accumulated_gradient = None
        self.is_complete = False
