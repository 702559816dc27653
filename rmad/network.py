import logging
from dataclasses import dataclass

import numpy as np

from rmad.errors import PreconditionError
from rmad.optim import AdamOptimizer, GradientClipper
from rmad.tensor import check_same_shape
from rmad.visitors import BackwardVisitor, FailurePolicy, GraphDependencyVisitor

logger = logging.getLogger('rmad.network')


@dataclass
class NeuralNetworkParameters:
    learning_rate: float = 0.001
    clip_value: float = 4.0
    adam_beta1: float = 0.9
    adam_beta2: float = 0.999
    adam_epsilon: float = 1e-8
    leaky_relu_alpha: float = 0.01
    huber_loss_delta: float = 1.0
    num_time_steps: int = 1
    batch_size: int = 1
    # sequential backward is required when subtrees share gradient buffers
    run_sequentially: bool = True
    failure_policy: FailurePolicy = FailurePolicy.TOLERATE_SINGLE


class NeuralNetwork:
    """Lifecycle shared by graph-driven networks.

    Subclasses provide build_layers(), build_graph(), the node the loss
    gradient is injected at (backward_start_operation) and the buffer the
    input is copied into (input_tensor). The rest of the step is common:

        network.initialize()
        output = network.forward(x)
        network.backward(loss_gradient)
        network.apply_gradients()
    """

    def __init__(self, parameters=None):
        self.parameters = parameters or NeuralNetworkParameters()
        self.model_layers = []
        self.graph = None
        self.optimizer = AdamOptimizer(
            learning_rate=self.parameters.learning_rate,
            beta1=self.parameters.adam_beta1,
            beta2=self.parameters.adam_beta2,
            epsilon=self.parameters.adam_epsilon,
        )
        self.clipper = GradientClipper(self.parameters.clip_value)
        self._visitor = None

    def build_layers(self):
        raise NotImplementedError

    def build_graph(self):
        raise NotImplementedError

    def backward_start_operation(self):
        raise NotImplementedError

    def input_tensor(self):
        raise NotImplementedError

    def initialize(self):
        self.model_layers = self.build_layers()
        self.graph = self.build_graph()
        start = self.backward_start_operation()
        count = GraphDependencyVisitor(start).traverse()
        self._visitor = BackwardVisitor(
            start,
            run_sequentially=self.parameters.run_sequentially,
            failure_policy=self.parameters.failure_policy,
        )
        logger.info(f"{self.__class__.__name__} initialized: {len(self.graph)} operations, "
                    f"{count} reachable from {start.specific_id}, "
                    f"{sum(len(layer.identifiers) for layer in self.model_layers)} weights")
        return self

    def _require_initialized(self):
        if self.graph is None or self._visitor is None:
            raise PreconditionError(f"{self.__class__.__name__} must be initialized first")

    def clear_gradients(self):
        for layer in self.model_layers:
            layer.clear_gradients()

    def forward(self, input):
        self._require_initialized()
        self.clear_gradients()
        self.input_tensor().copy_from(input)
        for node in self.graph:
            node.calculated_gradient = ()
            node.forward()
        return self.backward_start_operation().output.copy()

    def backward(self, gradient):
        """Inject the loss gradient at the output and return the gradient
        wrt the network input."""
        self._require_initialized()
        start = self.backward_start_operation()
        if start.output is None:
            raise PreconditionError("backward called before forward")
        gradient = np.asarray(gradient, dtype=np.float64)
        check_same_shape(gradient, start.output, "loss gradient and network output")

        if not np.any(gradient):
            logger.debug("Loss gradient is zero, skipping backward traversal")
            return np.zeros(self.input_tensor().shape)

        self._visitor.traverse(gradient)
        input_gradient = self.input_gradient()
        self._visitor.reset()
        return input_gradient

    def input_gradient(self):
        """Sum of the gradients computed for every use of the input buffer."""
        input_tensor = self.input_tensor()
        total = np.zeros(input_tensor.shape)
        for node in self.graph:
            for parameter, grad in zip(node.parameters, node.calculated_gradient):
                if parameter is input_tensor and grad is not None:
                    total += grad
        return total

    def apply_gradients(self, switch_gradients=False):
        self.clipper.clip_layers(self.model_layers)
        self.optimizer.switch_gradients = switch_gradients
        self.optimizer.optimize(self.model_layers)

    def revert_update(self, switch_gradients=False):
        # the saved state already reflects the sign used when it was applied
        if switch_gradients != self.optimizer.switch_gradients:
            logger.warning("revert_update called with a different switch_gradients than the update used")
        self.optimizer.revert()

    def adjust_learning_rate(self, learning_rate):
        logger.info(f"Learning rate: {self.parameters.learning_rate} -> {learning_rate}")
        self.parameters.learning_rate = learning_rate
        self.optimizer.learning_rate = learning_rate

    def reset(self):
        """Drop per-step state: gradients, visit counters and forward caches."""
        self._require_initialized()
        self.clear_gradients()
        self._visitor.reset()
        for node in self.graph:
            node.ctx = None
            node.output = None
            node.calculated_gradient = ()

    def save_weights(self, directory):
        for index, layer in enumerate(self.model_layers):
            layer.save(directory, index)
        logger.info(f"Saved {len(self.model_layers)} layers to {directory}")

    def load_weights(self, directory):
        for index, layer in enumerate(self.model_layers):
            layer.load(directory, index)
        logger.info(f"Loaded {len(self.model_layers)} layers from {directory}")
