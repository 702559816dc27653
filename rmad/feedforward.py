import logging
from importlib import resources

import numpy as np

from rmad.graph import Architecture, ComputationGraph, GraphBindings, LayerInfo
from rmad.layers import InitializationType, ModelLayerBuilder
from rmad.network import NeuralNetwork
from rmad.tensor import Tensor

logger = logging.getLogger('rmad.feedforward')


def load_architecture(name="feedforward"):
    text = resources.files("rmad").joinpath("architectures", f"{name}.json").read_text()
    return Architecture.from_json(text)


class FeedForwardNetwork(NeuralNetwork):
    """input -> projection -> num_layers x (linear, leaky ReLU) -> linear -> sigmoid

    Hidden layer weights live in 3-D tensors indexed by layer; the graph
    binds each layer's slice. "currentInput" resolves to the projection
    for layer 0 and to the previous layer's activation after that."""

    def __init__(self, input_size, hidden_size, output_size, num_layers, parameters=None, seed=None):
        super().__init__(parameters)
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.output_size = output_size
        self.num_layers = num_layers
        self.seed = seed
        self.input = Tensor.zeros(self.parameters.batch_size, input_size)
        self.output = Tensor.zeros(self.parameters.batch_size, output_size)

    def build_layers(self):
        rng = np.random.default_rng(self.seed)
        self.embedding_layer = (ModelLayerBuilder(rng)
                                .add_model_element_group("We", (self.input_size, self.hidden_size),
                                                         InitializationType.XAVIER)
                                .add_model_element_group("be", (1, self.hidden_size), InitializationType.ZEROES)
                                .build())
        self.hidden_layer = (ModelLayerBuilder(rng)
                             .add_model_element_group("W", (self.num_layers, self.hidden_size, self.hidden_size),
                                                      InitializationType.HE)
                             .add_model_element_group("b", (self.num_layers, 1, self.hidden_size),
                                                      InitializationType.ZEROES)
                             .build())
        self.output_layer = (ModelLayerBuilder(rng)
                             .add_model_element_group("V", (self.hidden_size, self.output_size),
                                                      InitializationType.XAVIER)
                             .add_model_element_group("bo", (1, self.output_size), InitializationType.ZEROES)
                             .build())
        return [self.embedding_layer, self.hidden_layer, self.output_layer]

    def _current_input(self, graph, layer_info):
        if layer_info.layer == 0:
            return graph.get("embedded", LayerInfo(layer_info.time_step, 0))
        return graph.get("activation", LayerInfo(layer_info.time_step, layer_info.layer - 1))

    def _last_hidden(self, graph, layer_info):
        return graph.get("activation", LayerInfo(layer_info.time_step, self.num_layers - 1))

    def build_graph(self):
        embedding, hidden, output = self.embedding_layer, self.hidden_layer, self.output_layer
        bindings = (GraphBindings()
                    .add_intermediate("input", lambda li: self.input)
                    .add_intermediate("output", lambda li: self.output)
                    .add_weight("We", lambda li: embedding.weight("We"))
                    .add_bias("be", lambda li: embedding.weight("be"))
                    .add_gradient("dWe", lambda li: embedding.gradient("We"))
                    .add_gradient("dbe", lambda li: embedding.gradient("be"))
                    .add_weight("W", lambda li: hidden.weight("W")[li.layer])
                    .add_bias("b", lambda li: hidden.weight("b")[li.layer])
                    .add_gradient("dW", lambda li: hidden.gradient("W")[li.layer])
                    .add_gradient("db", lambda li: hidden.gradient("b")[li.layer])
                    .add_weight("V", lambda li: output.weight("V"))
                    .add_bias("bo", lambda li: output.weight("bo"))
                    .add_gradient("dV", lambda li: output.gradient("V"))
                    .add_gradient("dbo", lambda li: output.gradient("bo"))
                    .add_scalar("alpha", lambda li: self.parameters.leaky_relu_alpha)
                    .add_operation_finder("currentInput", self._current_input)
                    .add_operation_finder("lastHidden", self._last_hidden))

        return ComputationGraph(bindings.freeze()).construct_from_architecture(
            load_architecture("feedforward"), num_layers=self.num_layers)

    def backward_start_operation(self):
        return self.graph.get("prediction")

    def input_tensor(self):
        return self.input
