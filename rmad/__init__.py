from rmad.errors import (AggregateBackwardError, ArchitectureError, OperationNotFoundError,
                         PreconditionError, RmadError, ShapeMismatchError)
from rmad.function import Context, Function
from rmad.graph import (Architecture, BindingKind, ComputationGraph, GraphBindings, GraphContext,
                        LayerInfo, OperationInfo, OperationKey, OperationNode)
from rmad.layers import InitializationType, ModelLayer, ModelLayerBuilder
from rmad.network import NeuralNetwork, NeuralNetworkParameters
from rmad.optim import AdamOptimizer, GradientClipper
from rmad.prad import BranchStack, PradOp, PradResult
from rmad.tensor import Tensor
from rmad.visitors import BackwardVisitor, FailurePolicy, GraphDependencyVisitor
