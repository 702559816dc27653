import enum
import io
import logging
import os
from dataclasses import dataclass

import numpy as np
import torch

from rmad.errors import ArchitectureError, ShapeMismatchError
from rmad.tensor import Tensor

logger = logging.getLogger('rmad.layers')


class InitializationType(enum.Enum):
    XAVIER = "xavier"
    HE = "he"
    ZEROES = "zeroes"


def initialize(shape, initialization, rng):
    """Fill a weight of the given shape. Fan-in and fan-out come from the
    last two dimensions, so every depth slice of a 3-D weight is drawn
    like a standalone matrix."""
    fan_in, fan_out = shape[-2], shape[-1]
    if initialization is InitializationType.XAVIER:
        limit = np.sqrt(6.0 / (fan_in + fan_out))
        return rng.uniform(-limit, limit, size=shape)
    if initialization is InitializationType.HE:
        return rng.normal(0.0, np.sqrt(2.0 / fan_in), size=shape)
    return np.zeros(shape)


@dataclass
class ModelElement:
    weight: Tensor
    gradient: Tensor
    first_moment: Tensor
    second_moment: Tensor
    dimensions: tuple
    initialization: InitializationType


class ModelLayer:
    """Named weights of one layer, each with its gradient and Adam moments.

    The layer owns these buffers. Graph bindings, the optimizer and the
    gradient clipper all work on them in place."""

    def __init__(self):
        self.elements = {}

    @property
    def identifiers(self):
        return list(self.elements)

    def __getitem__(self, name):
        return self.elements[name]

    def weight(self, name):
        return self.elements[name].weight

    def gradient(self, name):
        return self.elements[name].gradient

    def first_moment(self, name):
        return self.elements[name].first_moment

    def second_moment(self, name):
        return self.elements[name].second_moment

    def clear_gradients(self):
        for element in self.elements.values():
            element.gradient.clear()

    # Persistence

    def state_dict(self):
        return {
            name: {
                "weight": torch.from_numpy(element.weight.data.copy()),
                "first_moment": torch.from_numpy(element.first_moment.data.copy()),
                "second_moment": torch.from_numpy(element.second_moment.data.copy()),
            }
            for name, element in self.elements.items()
        }

    def load_state_dict(self, state):
        missing = set(self.elements) - set(state)
        unexpected = set(state) - set(self.elements)
        if missing or unexpected:
            raise ArchitectureError(f"Layer state does not match: missing {sorted(missing)}, "
                                    f"unexpected {sorted(unexpected)}")
        for name, element in self.elements.items():
            for part in ("weight", "first_moment", "second_moment"):
                value = state[name][part].numpy()
                target = getattr(element, part)
                if value.shape != target.shape:
                    raise ShapeMismatchError(
                        f"{name}.{part}: saved shape {value.shape}, layer shape {target.shape}")
                target.copy_from(value)

    def to_bytes(self):
        buffer = io.BytesIO()
        torch.save(self.state_dict(), buffer)
        return buffer.getvalue()

    def load_bytes(self, blob):
        state = torch.load(io.BytesIO(blob), weights_only=True)
        self.load_state_dict(state)
        return self

    def save(self, directory, index):
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, f"layer_{index}.pt")
        with open(path, "wb") as f:
            f.write(self.to_bytes())
        logger.debug(f"Saved layer {index} to {path}")
        return path

    def load(self, directory, index):
        path = os.path.join(directory, f"layer_{index}.pt")
        with open(path, "rb") as f:
            self.load_bytes(f.read())
        logger.debug(f"Loaded layer {index} from {path}")
        return self


class ModelLayerBuilder:
    """Builds a ModelLayer one element group at a time:

        layer = (ModelLayerBuilder(rng)
                 .add_model_element_group("W", (4, 8), InitializationType.XAVIER)
                 .add_model_element_group("b", (1, 8), InitializationType.ZEROES)
                 .build())
    """

    def __init__(self, rng=None):
        self.rng = rng if rng is not None else np.random.default_rng()
        self.layer = ModelLayer()

    def add_model_element_group(self, name, dimensions, initialization=InitializationType.XAVIER):
        dimensions = tuple(int(d) for d in dimensions)
        if len(dimensions) not in (2, 3):
            raise ArchitectureError(f"Invalid dimensions {dimensions} for {name!r}, expected 2 or 3")
        if name in self.layer.elements:
            raise ArchitectureError(f"Element group {name!r} added twice")
        initialization = InitializationType(initialization)
        self.layer.elements[name] = ModelElement(
            weight=Tensor(initialize(dimensions, initialization, self.rng)),
            gradient=Tensor.zeros(*dimensions),
            first_moment=Tensor.zeros(*dimensions),
            second_moment=Tensor.zeros(*dimensions),
            dimensions=dimensions,
            initialization=initialization,
        )
        return self

    def build(self):
        return self.layer
