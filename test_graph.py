import json

import numpy as np
import pytest

from rmad.errors import ArchitectureError, OperationNotFoundError, PreconditionError, ShapeMismatchError
from rmad.graph import (Architecture, BindingKind, ComputationGraph, GraphBindings, LayerInfo,
                        OperationInfo, OperationKey, input_name)
from rmad.tensor import Tensor
from rmad.visitors import BackwardVisitor, GraphDependencyVisitor

RECURRENT = {
    "timeSteps": [{
        "layers": [{
            "operations": [
                {"id": "inputProjection", "type": "MatrixMultiply", "inputs": ["x", "U"],
                 "gradientResultTo": [None, "dU"]},
                {"id": "recurrent", "type": "MatrixMultiply", "inputs": ["previousHidden", "W"],
                 "gradientResultTo": [None, "dW"]},
                {"id": "preActivation", "type": "MatrixAdd", "inputs": ["inputProjection", "recurrent"]},
                {"id": "hidden", "type": "Tanh", "inputs": ["preActivation"]},
            ]
        }],
        "endOperations": [
            {"id": "output", "type": "MatrixMultiply", "inputs": ["hidden", "V"], "gradientResultTo": [None, "dV"]},
            {"id": "accumulated", "type": "MatrixAdd", "inputs": ["output", "previousAccumulated"]},
        ],
    }]
}


class RecurrentFixture:
    """tanh RNN whose per-step outputs are summed into one prediction."""

    def __init__(self, num_time_steps=3, batch=2, n_in=3, n_hidden=4, n_out=2, seed=0):
        rng = np.random.default_rng(seed)
        self.num_time_steps = num_time_steps
        self.xs = [Tensor(rng.normal(size=(batch, n_in))) for _ in range(num_time_steps)]
        self.U = Tensor(rng.normal(size=(n_in, n_hidden)) * 0.5)
        self.W = Tensor(rng.normal(size=(n_hidden, n_hidden)) * 0.5)
        self.V = Tensor(rng.normal(size=(n_hidden, n_out)) * 0.5)
        self.dU, self.dW, self.dV = Tensor.like(self.U), Tensor.like(self.W), Tensor.like(self.V)
        self.target = Tensor(rng.normal(size=(batch, n_out)))
        self.zero_hidden = Tensor.zeros(batch, n_hidden)
        self.zero_output = Tensor.zeros(batch, n_out)

    def previous_hidden(self, graph, li):
        if li.time_step == 0:
            return self.zero_hidden
        return graph.get("hidden", LayerInfo(li.time_step - 1, 0))

    def previous_accumulated(self, graph, li):
        if li.time_step == 0:
            return self.zero_output
        return graph.get("accumulated", LayerInfo(li.time_step - 1, 0))

    def build(self):
        bindings = (GraphBindings()
                    .add_intermediate("x", lambda li: self.xs[li.time_step])
                    .add_intermediate("target", lambda li: self.target)
                    .add_weight("U", lambda li: self.U)
                    .add_weight("W", lambda li: self.W)
                    .add_weight("V", lambda li: self.V)
                    .add_gradient("dU", lambda li: self.dU)
                    .add_gradient("dW", lambda li: self.dW)
                    .add_gradient("dV", lambda li: self.dV)
                    .add_operation_finder("previousHidden", self.previous_hidden)
                    .add_operation_finder("previousAccumulated", self.previous_accumulated)
                    .add_operation_finder("prediction", lambda graph, li: graph.get(
                        "accumulated", LayerInfo(self.num_time_steps - 1, 0))))
        graph = ComputationGraph(bindings.freeze()).construct_from_architecture(
            Architecture.from_dict(RECURRENT), num_time_steps=self.num_time_steps)
        graph.add_operation(OperationInfo("loss", "MeanSquaredErrorLoss", ("prediction", "target")),
                            LayerInfo(self.num_time_steps - 1, 0))
        return graph

    def reference_loss(self):
        h = np.zeros_like(self.zero_hidden.data)
        acc = np.zeros_like(self.zero_output.data)
        for x in self.xs:
            h = np.tanh(x.data @ self.U.data + h @ self.W.data)
            acc = acc + h @ self.V.data
        return np.mean((acc - self.target.data) ** 2)

    def numeric_gradient(self, weight, eps=1e-6):
        grad = np.zeros_like(weight.data)
        for i in np.ndindex(weight.shape):
            original = weight.data[i]
            weight.data[i] = original + eps
            plus = self.reference_loss()
            weight.data[i] = original - eps
            minus = self.reference_loss()
            weight.data[i] = original
            grad[i] = (plus - minus) / (2 * eps)
        return grad


def run_forward(graph):
    for node in graph:
        node.forward()
    return graph.end_operation.output


@pytest.mark.parametrize("run_sequentially", [True, False])
def test_recurrent_graph_gradients_match_finite_differences(run_sequentially):
    rnn = RecurrentFixture()
    graph = rnn.build()

    loss = run_forward(graph)
    assert loss[0, 0] == pytest.approx(rnn.reference_loss())

    start = graph.end_operation
    GraphDependencyVisitor(start).traverse()
    visitor = BackwardVisitor(start, run_sequentially=run_sequentially)
    visitor.traverse(np.ones((1, 1)))

    np.testing.assert_allclose(rnn.dU.data, rnn.numeric_gradient(rnn.U), atol=1e-6)
    np.testing.assert_allclose(rnn.dW.data, rnn.numeric_gradient(rnn.W), atol=1e-6)
    np.testing.assert_allclose(rnn.dV.data, rnn.numeric_gradient(rnn.V), atol=1e-6)
    assert visitor.aggregate_error is None


def test_fan_in_counts_follow_consumers():
    rnn = RecurrentFixture(num_time_steps=3)
    graph = rnn.build()
    GraphDependencyVisitor(graph.end_operation).traverse()

    # hidden_t feeds output_t and recurrent_{t+1}; the last one only output
    assert graph.get("hidden", (0, 0)).dependency_counts[0] == 2
    assert graph.get("hidden", (1, 0)).dependency_counts[0] == 2
    assert graph.get("hidden", (2, 0)).dependency_counts[0] == 1
    assert graph.get("loss", (2, 0)).dependency_counts[0] == 1
    # visit counters are reset after the pass
    assert all(node.visited_count == 0 for node in graph)


def test_lookup_by_key_and_string():
    graph = RecurrentFixture(num_time_steps=2).build()

    node = graph.get("hidden", LayerInfo(1, 0))
    assert graph["hidden_1_0"] is node
    assert graph[OperationKey("hidden", LayerInfo(1, 0))] is node
    assert node.specific_id == "hidden_1_0"
    assert "hidden_1_0" in graph
    assert graph.start_operation.specific_id == "inputProjection_0_0"
    assert graph.end_operation.specific_id == "loss_1_0"

    with pytest.raises(OperationNotFoundError):
        graph["hidden_5_0"]
    with pytest.raises(KeyError):
        graph.get("missing")
    assert graph.find("missing") is None


def test_forward_order_follows_the_architecture():
    graph = RecurrentFixture(num_time_steps=2).build()
    ids = [node.specific_id for node in graph]
    assert ids == [
        "inputProjection_0_0", "recurrent_0_0", "preActivation_0_0", "hidden_0_0",
        "output_0_0", "accumulated_0_0",
        "inputProjection_1_0", "recurrent_1_0", "preActivation_1_0", "hidden_1_0",
        "output_1_0", "accumulated_1_0",
        "loss_1_0",
    ]
    assert len(graph) == len(ids)


def test_layers_repeat_with_their_own_coordinates():
    architecture = Architecture.from_dict({
        "timeSteps": [{
            "startOperations": [{"id": "start", "type": "MatrixTranspose", "inputs": ["x"]}],
            "layers": [{"operations": [{"id": "scaled", "type": "MatrixMultiplyScalar",
                                        "inputs": ["x", "factor"]}]}],
            "endOperations": [{"id": "end", "type": "Sigmoid", "inputs": ["start"]}],
        }]
    })
    bindings = (GraphBindings()
                .add_intermediate("x", lambda li: Tensor(np.ones((2, 2))))
                .add_scalar("factor", lambda li: li.layer + 1))
    graph = ComputationGraph(bindings).construct_from_architecture(architecture, num_layers=3)

    assert [n.specific_id for n in graph] == ["start_0_0", "scaled_0_0", "scaled_0_1", "scaled_0_2", "end_0_0"]
    outputs = [graph.get("scaled", (0, layer)).forward() for layer in range(3)]
    for layer, out in enumerate(outputs):
        np.testing.assert_array_equal(out, np.full((2, 2), layer + 1.0))


def test_nested_layers_get_their_own_index():
    architecture = Architecture.from_dict({
        "timeSteps": [{
            "layers": [{
                "operations": [{"id": "outer", "type": "Tanh", "inputs": ["x"]}],
                "nestedLayers": [{"operations": [{"id": "inner", "type": "Sin", "inputs": ["x"]}]}],
            }]
        }]
    })
    bindings = GraphBindings().add_intermediate("x", lambda li: Tensor(np.zeros((1, 1))))
    graph = ComputationGraph(bindings).construct_from_architecture(architecture, num_layers=2, num_nested_layers=2)

    assert "outer_0_1" in graph
    assert "inner_0_1" in graph
    assert "inner_0_1_1" in graph
    assert len(graph) == 6
    assert graph.get("inner", LayerInfo(0, 1, 1)).specific_id == "inner_0_1_1"


def test_pascal_case_documents_are_accepted():
    document = {"TimeSteps": [{"StartOperations": [
        {"Id": "a", "Type": "Sigmoid", "Inputs": ["x"], "SetResultTo": "y"}]}]}
    info = Architecture.from_dict(document).time_steps[0].start_operations[0]
    assert info == OperationInfo("a", "Sigmoid", ("x",), "y", ())


def test_input_names_drop_index_hints():
    assert input_name("Wf[layer]") == "Wf"
    assert input_name("Wf") == "Wf"
    with pytest.raises(ArchitectureError):
        input_name("[]")


@pytest.mark.parametrize("text", [
    "{not json",
    json.dumps({"timeSteps": []}),
    json.dumps({"timeSteps": [{"startOperations": [{"type": "Sigmoid", "inputs": []}]}]}),
    json.dumps({"timeSteps": [{"startOperations": [{"id": "a", "type": "Sigmoid", "inputs": "x"}]}]}),
    json.dumps([1, 2, 3]),
])
def test_malformed_architectures_fail_at_construction(text):
    with pytest.raises(ArchitectureError):
        Architecture.from_json(text)


def single_operation_graph(info, bindings=None):
    bindings = bindings or GraphBindings().add_intermediate("x", lambda li: Tensor(np.ones((2, 2))))
    graph = ComputationGraph(bindings)
    graph.add_operation(info)
    return graph


def test_unknown_operation_type_is_a_construction_error():
    with pytest.raises(ArchitectureError, match="Unknown operation type"):
        single_operation_graph(OperationInfo("a", "NotAnOperation", ("x",)))


def test_unresolvable_input_is_a_construction_error():
    with pytest.raises(ArchitectureError, match="Input name y not found"):
        single_operation_graph(OperationInfo("a", "Sigmoid", ("y",)))


def test_missing_gradient_binding_is_a_construction_error():
    with pytest.raises(ArchitectureError, match="Gradient name dx not found"):
        single_operation_graph(OperationInfo("a", "Sigmoid", ("x",), gradient_result_to=("dx",)))


def test_gradient_destination_must_match_its_weight():
    bindings = (GraphBindings()
                .add_intermediate("x", lambda li: Tensor(np.ones((2, 3))))
                .add_weight("W", lambda li: Tensor(np.ones((3, 4))))
                .add_gradient("dW", lambda li: Tensor(np.zeros((4, 3)))))
    with pytest.raises(ShapeMismatchError):
        single_operation_graph(OperationInfo("a", "MatrixMultiply", ("x", "W"), gradient_result_to=(None, "dW")),
                               bindings)


def test_duplicate_operation_is_a_construction_error():
    graph = single_operation_graph(OperationInfo("a", "Sigmoid", ("x",)))
    with pytest.raises(ArchitectureError, match="added twice"):
        graph.add_operation(OperationInfo("a", "Sigmoid", ("x",)))


def test_duplicate_binding_is_rejected():
    bindings = GraphBindings().add_weight("W", lambda li: None)
    with pytest.raises(ArchitectureError):
        bindings.add_weight("W", lambda li: None)


def test_frozen_context_cannot_be_modified():
    context = GraphBindings().add_weight("W", lambda li: Tensor(np.ones((1, 1)))).freeze()
    with pytest.raises(TypeError):
        context.weights["V"] = lambda li: None
    assert "W" in context.bindings(BindingKind.WEIGHT)


def test_binding_lookup_through_the_graph():
    weight = Tensor(np.ones((2, 2)))
    graph = ComputationGraph(GraphBindings().add_weight("W", lambda li: weight))
    assert graph.tensor(BindingKind.WEIGHT, "W") is weight
    with pytest.raises(ArchitectureError):
        graph.tensor(BindingKind.BIAS, "W")


def test_empty_graph_has_no_start_operation():
    graph = ComputationGraph(GraphBindings())
    with pytest.raises(PreconditionError):
        graph.start_operation


def test_reading_an_operation_that_has_not_run_is_a_precondition_error():
    graph = RecurrentFixture(num_time_steps=1).build()
    with pytest.raises(PreconditionError):
        graph.get("hidden").forward()


def test_result_is_copied_into_its_intermediate():
    y = Tensor.zeros(2, 2)
    bindings = (GraphBindings()
                .add_intermediate("x", lambda li: Tensor(np.zeros((2, 2))))
                .add_intermediate("y", lambda li: y))
    graph = single_operation_graph(OperationInfo("a", "Sigmoid", ("x",), set_result_to="y"), bindings)
    run_forward(graph)
    np.testing.assert_array_equal(y.data, np.full((2, 2), 0.5))


def test_store_and_restore_intermediates():
    rnn = RecurrentFixture(num_time_steps=2)
    graph = rnn.build()

    first_loss = run_forward(graph).copy()
    graph.store_operation_intermediates("first")
    first_reference = rnn.numeric_gradient(rnn.V)

    for x in rnn.xs:
        x.copy_from(x.data * -2.0)
    run_forward(graph)
    graph.store_operation_intermediates("second")

    graph.restore_operation_intermediates("first")
    np.testing.assert_array_equal(graph.end_operation.output, first_loss)

    start = graph.end_operation
    GraphDependencyVisitor(start).traverse()
    BackwardVisitor(start).traverse(np.ones((1, 1)))
    np.testing.assert_allclose(rnn.dV.data, first_reference, atol=1e-6)

    with pytest.raises(PreconditionError):
        graph.restore_operation_intermediates("never-stored")
