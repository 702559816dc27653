import enum
import json
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import NamedTuple

from rmad.errors import (ArchitectureError, OperationNotFoundError, PreconditionError,
                         ShapeMismatchError)
from rmad.function import Context
from rmad.losses import LOSSES
from rmad.node import GraphNode
from rmad.ops import OPERATIONS
from rmad.tensor import Tensor

logger = logging.getLogger('rmad.graph')


class LayerInfo(NamedTuple):
    """Address of an operation instance: (time step, layer, nested layer)."""
    time_step: int = 0
    layer: int = 0
    nested_layer: int = 0

    def __str__(self):
        if self.nested_layer:
            return f"{self.time_step}_{self.layer}_{self.nested_layer}"
        return f"{self.time_step}_{self.layer}"


class OperationKey(NamedTuple):
    id: str
    layer_info: LayerInfo = LayerInfo()

    def __str__(self):
        return f"{self.id}_{self.layer_info}"


def input_name(raw):
    """'Wf[layer]' -> 'Wf'. The bracketed part is only a hint for readers."""
    parts = [p for p in re.split(r"[\[\]]", raw) if p]
    if not parts:
        raise ArchitectureError(f"Empty input name {raw!r}")
    return parts[0]


# Architecture document

_MISSING = object()


def _field(entry, key, default=_MISSING):
    """Read a camelCase key, also accepting its PascalCase spelling."""
    if not isinstance(entry, dict):
        raise ArchitectureError(f"Expected an object, got {type(entry).__name__}")
    for candidate in (key, key[0].upper() + key[1:]):
        if candidate in entry:
            return entry[candidate]
    if default is _MISSING:
        raise ArchitectureError(f"Architecture entry is missing {key!r}: {entry}")
    return default


def _list_field(entry, key):
    value = _field(entry, key, None) or []
    if not isinstance(value, list):
        raise ArchitectureError(f"{key!r} must be a list, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class OperationInfo:
    id: str
    type: str
    inputs: tuple = ()
    set_result_to: str = None
    # parallel to inputs, None where the input's gradient is not stored
    gradient_result_to: tuple = ()

    @classmethod
    def from_dict(cls, entry):
        inputs = _list_field(entry, "inputs")
        if not all(isinstance(i, str) for i in inputs):
            raise ArchitectureError(f"Inputs must be strings: {inputs}")
        return cls(
            id=str(_field(entry, "id")),
            type=str(_field(entry, "type")),
            inputs=tuple(inputs),
            set_result_to=_field(entry, "setResultTo", None),
            gradient_result_to=tuple(_list_field(entry, "gradientResultTo")),
        )


@dataclass(frozen=True)
class LayerSpec:
    operations: tuple = ()
    nested_layers: tuple = ()

    @classmethod
    def from_dict(cls, entry):
        return cls(
            operations=tuple(OperationInfo.from_dict(o) for o in _list_field(entry, "operations")),
            nested_layers=tuple(
                tuple(OperationInfo.from_dict(o) for o in _list_field(nested, "operations"))
                for nested in _list_field(entry, "nestedLayers")),
        )


@dataclass(frozen=True)
class TimeStepSpec:
    start_operations: tuple = ()
    layers: tuple = ()
    end_operations: tuple = ()

    @classmethod
    def from_dict(cls, entry):
        return cls(
            start_operations=tuple(OperationInfo.from_dict(o) for o in _list_field(entry, "startOperations")),
            layers=tuple(LayerSpec.from_dict(layer) for layer in _list_field(entry, "layers")),
            end_operations=tuple(OperationInfo.from_dict(o) for o in _list_field(entry, "endOperations")),
        )


@dataclass(frozen=True)
class Architecture:
    """Declarative description of a network: per time step, the start
    operations, the operations repeated per layer and the end operations."""
    time_steps: tuple = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, document):
        time_steps = _list_field(document, "timeSteps")
        if not time_steps:
            raise ArchitectureError("Architecture has no time steps")
        return cls(time_steps=tuple(TimeStepSpec.from_dict(t) for t in time_steps))

    @classmethod
    def from_json(cls, text):
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise ArchitectureError(f"Architecture is not valid JSON: {e}") from e
        return cls.from_dict(document)

    @classmethod
    def load(cls, path):
        with open(path, "r") as f:
            return cls.from_json(f.read())


# Bindings


class BindingKind(enum.Enum):
    WEIGHT = "weights"
    BIAS = "biases"
    GRADIENT = "gradients"
    INTERMEDIATE = "intermediates"
    SCALAR = "scalars"
    OPERATION_FINDER = "operation_finders"


@dataclass(frozen=True)
class GraphContext:
    """Frozen set of named lookup functions the graph resolves its inputs
    from. Each takes a LayerInfo; operation finders take (graph, layer_info)."""
    weights: MappingProxyType
    biases: MappingProxyType
    gradients: MappingProxyType
    intermediates: MappingProxyType
    scalars: MappingProxyType
    operation_finders: MappingProxyType

    def bindings(self, kind):
        return getattr(self, BindingKind(kind).value)


class GraphBindings:
    """Collects bindings, then freeze() hands an immutable GraphContext to
    the graph.

        context = (GraphBindings()
                   .add_weight("W", lambda li: weights[li.layer])
                   .add_gradient("dW", lambda li: gradients[li.layer])
                   .freeze())
    """

    def __init__(self):
        self._bindings = {kind: {} for kind in BindingKind}

    def _add(self, kind, name, lookup):
        if not callable(lookup):
            raise ArchitectureError(f"Binding {name!r} must be callable")
        if name in self._bindings[kind]:
            raise ArchitectureError(f"{kind.value} binding {name!r} registered twice")
        self._bindings[kind][name] = lookup
        return self

    def add_weight(self, name, lookup):
        return self._add(BindingKind.WEIGHT, name, lookup)

    def add_bias(self, name, lookup):
        return self._add(BindingKind.BIAS, name, lookup)

    def add_gradient(self, name, lookup):
        return self._add(BindingKind.GRADIENT, name, lookup)

    def add_intermediate(self, name, lookup):
        return self._add(BindingKind.INTERMEDIATE, name, lookup)

    def add_scalar(self, name, lookup):
        return self._add(BindingKind.SCALAR, name, lookup)

    def add_operation_finder(self, name, finder):
        return self._add(BindingKind.OPERATION_FINDER, name, finder)

    def freeze(self):
        return GraphContext(**{kind.value: MappingProxyType(dict(self._bindings[kind]))
                               for kind in BindingKind})


def _as_tensor(value, name):
    if isinstance(value, Tensor):
        return value
    if value is None:
        raise ArchitectureError(f"Binding {name!r} resolved to nothing")
    return Tensor(value)


# Nodes


class OperationNode(GraphNode):
    """One operation instance at one coordinate of the graph."""

    def __init__(self, function, info, layer_info):
        super().__init__()
        self.function = function
        self.info = info
        self.id = info.id
        self.layer_info = layer_info
        self.key = OperationKey(info.id, layer_info)
        self.specific_id = str(self.key)
        self.parameters = []
        self.gradient_destinations = []
        self.result_to = None
        self.next = None
        self.ctx = None
        self.output = None
        self.calculated_gradient = ()
        self._stored = {}

    def forward(self):
        args = []
        for p in self.parameters:
            if isinstance(p, OperationNode):
                if p.output is None:
                    raise PreconditionError(f"{self.specific_id} reads {p.specific_id} before it has run")
                args.append(p.output)
            elif isinstance(p, Tensor):
                # bound buffers are refilled in place between passes
                args.append(p.data.copy())
            else:
                args.append(p)

        self.ctx = Context()
        self.output = self.function.evaluate(self.ctx, *args)
        if self.result_to is not None:
            self.result_to.copy_from(self.output)
        return self.output

    def run_backward(self, gradient_lock):
        if self.ctx is None:
            raise PreconditionError(f"{self.specific_id}: backward called before forward")
        if self.accumulated_gradient is None:
            return [None] * len(self.backward_adjacent)

        grads = list(self.function.differentiate(self.ctx, self.accumulated_gradient))
        grads += [None] * (len(self.parameters) - len(grads))
        self.calculated_gradient = tuple(grads)

        # destinations can be shared across time steps and subtrees
        with gradient_lock:
            for destination, grad in zip(self.gradient_destinations, grads):
                if destination is not None and grad is not None:
                    destination.accumulate(grad)
        return grads

    def store(self, key):
        self._stored[key] = (self.ctx, self.output)

    def restore(self, key):
        if key not in self._stored:
            raise PreconditionError(f"{self.specific_id} has nothing stored under {key!r}")
        self.ctx, self.output = self._stored[key]

    def __repr__(self):
        return f"OperationNode({self.specific_id}, {self.function.__name__})"


# Graph


class ComputationGraph:
    """Ordered, addressable chain of OperationNodes built from an
    Architecture and a GraphContext.

    Operation types resolve once, when a node is added, from the closed
    registry of primitives and losses (plus any extra types passed in)."""

    def __init__(self, context, operation_types=None):
        if isinstance(context, GraphBindings):
            context = context.freeze()
        self.context = context
        self.operation_types = {**OPERATIONS, **LOSSES, **(operation_types or {})}
        self._operations = {}
        self._by_name = {}
        self._start = None
        self._current = None

    def construct_from_architecture(self, architecture, num_time_steps=1, num_layers=1, num_nested_layers=1):
        for t in range(num_time_steps):
            for step in architecture.time_steps:
                for info in step.start_operations:
                    self.add_operation(info, LayerInfo(t, 0, 0))
                for layer_index in range(num_layers):
                    for layer in step.layers:
                        for info in layer.operations:
                            self.add_operation(info, LayerInfo(t, layer_index, 0))
                        for nested_index in range(num_nested_layers):
                            for nested in layer.nested_layers:
                                for info in nested:
                                    self.add_operation(info, LayerInfo(t, layer_index, nested_index))
                for info in step.end_operations:
                    self.add_operation(info, LayerInfo(t, 0, 0))

        logger.info(f"Constructed graph with {len(self)} operations "
                    f"({num_time_steps} time steps, {num_layers} layers)")
        return self

    def add_operation(self, info, layer_info=LayerInfo()):
        function = self.operation_types.get(info.type)
        if function is None:
            raise ArchitectureError(f"Unknown operation type {info.type!r} for {info.id!r}")

        node = OperationNode(function, info, LayerInfo(*layer_info))
        if node.key in self._operations:
            raise ArchitectureError(f"Operation {node.specific_id} added twice")

        self._setup_dependencies(node)

        if self._start is None:
            self._start = node
        else:
            self._current.next = node
        self._current = node
        self._operations[node.key] = node
        self._by_name[node.specific_id] = node
        logger.debug(f"Added {node!r} with inputs {list(info.inputs)}")
        return self

    def _setup_dependencies(self, node):
        ctx = self.context
        li = node.layer_info
        for raw in node.info.inputs:
            name = input_name(raw)
            producer = self._operations.get(OperationKey(name, li))
            if producer is not None:
                node.backward_adjacent.append(producer)
                node.parameters.append(producer)
            elif name in ctx.operation_finders:
                found = ctx.operation_finders[name](self, li)
                if found is None:
                    raise ArchitectureError(f"Operation finder {name!r} found nothing for {node.specific_id}")
                if isinstance(found, OperationNode):
                    node.backward_adjacent.append(found)
                    node.parameters.append(found)
                else:
                    node.backward_adjacent.append(None)
                    node.parameters.append(found if isinstance(found, (int, float)) else _as_tensor(found, name))
            elif name in ctx.weights:
                node.backward_adjacent.append(None)
                node.parameters.append(_as_tensor(ctx.weights[name](li), name))
            elif name in ctx.biases:
                node.backward_adjacent.append(None)
                node.parameters.append(_as_tensor(ctx.biases[name](li), name))
            elif name in ctx.intermediates:
                node.backward_adjacent.append(None)
                node.parameters.append(_as_tensor(ctx.intermediates[name](li), name))
            elif name in ctx.scalars:
                node.backward_adjacent.append(None)
                node.parameters.append(float(ctx.scalars[name](li)))
            else:
                raise ArchitectureError(f"Input name {name} not found for operation {node.specific_id}")

        destinations = list(node.info.gradient_result_to)
        if len(destinations) > len(node.parameters):
            raise ArchitectureError(
                f"{node.specific_id} has {len(destinations)} gradient destinations for "
                f"{len(node.parameters)} inputs")
        destinations += [None] * (len(node.parameters) - len(destinations))
        for parameter, raw in zip(node.parameters, destinations):
            if raw is None:
                node.gradient_destinations.append(None)
                continue
            name = input_name(raw)
            if name not in ctx.gradients:
                raise ArchitectureError(f"Gradient name {name} not found for operation {node.specific_id}")
            destination = _as_tensor(ctx.gradients[name](li), name)
            if isinstance(parameter, Tensor) and parameter.shape != destination.shape:
                raise ShapeMismatchError(
                    f"{node.specific_id}: gradient {name} has shape {destination.shape}, "
                    f"its input has shape {parameter.shape}")
            node.gradient_destinations.append(destination)

        result_to = node.info.set_result_to
        if result_to is not None:
            name = input_name(result_to)
            if name not in ctx.intermediates:
                raise ArchitectureError(f"Result destination {name} not found for operation {node.specific_id}")
            node.result_to = _as_tensor(ctx.intermediates[name](li), name)

    # Lookup

    @property
    def start_operation(self):
        if self._start is None:
            raise PreconditionError("The graph has no operations")
        return self._start

    @property
    def end_operation(self):
        if self._current is None:
            raise PreconditionError("The graph has no operations")
        return self._current

    def __getitem__(self, key):
        if isinstance(key, OperationKey):
            node = self._operations.get(OperationKey(key.id, LayerInfo(*key.layer_info)))
        else:
            node = self._by_name.get(key)
        if node is None:
            raise OperationNotFoundError(f"No operation {key}")
        return node

    def get(self, id, layer_info=LayerInfo()):
        return self[OperationKey(id, LayerInfo(*layer_info))]

    def find(self, id, layer_info=LayerInfo()):
        """Like get, but None when missing. Meant for operation finders."""
        return self._operations.get(OperationKey(id, LayerInfo(*layer_info)))

    def tensor(self, kind, name, layer_info=LayerInfo()):
        """Resolve a named binding the way the graph resolves inputs."""
        bindings = self.context.bindings(kind)
        if name not in bindings:
            raise ArchitectureError(f"No {BindingKind(kind).value} binding named {name!r}")
        return bindings[name](LayerInfo(*layer_info))

    def __iter__(self):
        node = self._start
        while node is not None:
            yield node
            node = node.next

    def __len__(self):
        return len(self._operations)

    def __contains__(self, key):
        if isinstance(key, OperationKey):
            return OperationKey(key.id, LayerInfo(*key.layer_info)) in self._operations
        return key in self._by_name

    # Intermediates

    def store_operation_intermediates(self, key):
        for node in self:
            node.store(key)

    def restore_operation_intermediates(self, key):
        for node in self:
            node.restore(key)
