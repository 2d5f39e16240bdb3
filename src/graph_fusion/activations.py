"""
Activation Parameter Extraction

Reads the positional parameter list a fused convolution needs to reproduce
an activation node. The order of the list is what the fused kernel consumes:

    Relu, Sigmoid, Tanh   []
    LeakyRelu             [alpha]
    Clip                  [min, max]
    HardSigmoid           [alpha, beta]
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
from onnx import TensorProto, helper, numpy_helper

from .errors import MissingRequiredAttributeError
from .graph import FusionGraph, GraphNode

logger = logging.getLogger(__name__)

FLOAT_LOWEST = float(np.finfo(np.float32).min)
FLOAT_MAX = float(np.finfo(np.float32).max)

HARD_SIGMOID_DEFAULT_ALPHA = 0.2
HARD_SIGMOID_DEFAULT_BETA = 0.5

PARAMETERLESS_ACTIVATIONS = ("Relu", "Sigmoid", "Tanh")

_CLIP_BOUND_TYPES = (
    TensorProto.FLOAT,
    TensorProto.FLOAT16,
    TensorProto.BFLOAT16,
    TensorProto.DOUBLE,
)


def _float_attribute(node: GraphNode, name: str, default: Optional[float] = None) -> Optional[float]:
    attr = node.get_attribute(name)
    if attr is None:
        return default
    return float(helper.get_attribute_value(attr))


def _constant_input_value(graph: FusionGraph,
                          node: GraphNode,
                          input_index: int,
                          default: float) -> Optional[float]:
    # a missing optional input keeps the default bound
    if len(node.inputs) <= input_index or not node.inputs[input_index]:
        return default

    name = node.inputs[input_index]
    tensor = graph.get_constant_initializer(name)
    if tensor is None:
        logger.debug(f"Clip '{node.name}' input '{name}' is not a constant initializer")
        return None
    if tensor.data_type not in _CLIP_BOUND_TYPES:
        logger.debug(f"Clip '{node.name}' input '{name}' has unsupported type "
                     f"{TensorProto.DataType.Name(tensor.data_type)}")
        return None

    values = numpy_helper.to_array(tensor)
    if values.size != 1:
        return None
    return float(values.reshape(-1)[0])


def get_clip_constant_min_max(graph: FusionGraph, node: GraphNode) -> Optional[Tuple[float, float]]:
    """
    Resolve the effective bounds of a Clip node.

    Clip before opset 11 carries its bounds as attributes; later versions take
    them as optional inputs which must be constant initializers to be usable.

    Returns:
        (min, max), or None if either bound is only known at run time
    """
    if node.since_version < 11:
        return (_float_attribute(node, "min", FLOAT_LOWEST),
                _float_attribute(node, "max", FLOAT_MAX))

    min_value = _constant_input_value(graph, node, 1, FLOAT_LOWEST)
    if min_value is None:
        return None
    max_value = _constant_input_value(graph, node, 2, FLOAT_MAX)
    if max_value is None:
        return None
    return min_value, max_value


def extract_activation_params(graph: FusionGraph, node: GraphNode) -> Optional[List[float]]:
    """
    Extract the ordered activation parameters of ``node``.

    Returns None when the parameters cannot be determined statically (Clip
    with non-constant bounds).

    Raises:
        MissingRequiredAttributeError: LeakyRelu without ``alpha``
        ValueError: ``node`` is not a fusable activation
    """
    op_type = node.op_type

    if op_type in PARAMETERLESS_ACTIVATIONS:
        return []

    if op_type == "LeakyRelu":
        alpha = _float_attribute(node, "alpha")
        if alpha is None:
            raise MissingRequiredAttributeError(node.name, op_type, "alpha")
        return [alpha]

    if op_type == "Clip":
        bounds = get_clip_constant_min_max(graph, node)
        return None if bounds is None else list(bounds)

    if op_type == "HardSigmoid":
        return [_float_attribute(node, "alpha", HARD_SIGMOID_DEFAULT_ALPHA),
                _float_attribute(node, "beta", HARD_SIGMOID_DEFAULT_BETA)]

    raise ValueError(f"{op_type} is not a fusable activation")
