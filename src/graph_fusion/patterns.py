"""
Conv + Activation Pattern Matching

Recognises a convolution followed by an activation it can absorb. Two
grammars exist and the anchor's execution provider picks one:

Fast path (e.g. CUDA, float input only):
    Conv -> Relu
    Conv -> Add(conv_out, other) -> Relu

Generic path (every other provider):
    Conv -> Relu | Sigmoid | Tanh | LeakyRelu | Clip | HardSigmoid
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from .activations import extract_activation_params
from .graph import ONNX_DOMAIN, FusionGraph, GraphNode
from .providers import ProviderCapability, ProviderCompatibilityChecker

logger = logging.getLogger(__name__)

CONV_VERSIONS = (1, 11)
ADD_VERSIONS = (6, 7, 13, 14)
ACTIVATION_VERSIONS: Dict[str, Tuple[int, ...]] = {
    "Relu": (6, 13, 14),
    "Sigmoid": (6, 13),
    "Tanh": (6, 13),
    "LeakyRelu": (6,),
    "Clip": (6, 11, 12, 13),
    "HardSigmoid": (6,),
}


def is_supported_optype_version_and_domain(node: GraphNode,
                                           op_type: str,
                                           versions: Sequence[int],
                                           domain: str = ONNX_DOMAIN) -> bool:
    return node.op_type == op_type and node.since_version in versions and node.domain == domain


class MatchResult(ABC):
    """Outcome of matching at an anchor node. Falsy only for NoMatch."""

    def __bool__(self) -> bool:
        return True

    @property
    @abstractmethod
    def nodes(self) -> Tuple[GraphNode, ...]:
        """Matched chain, terminal node last"""


@dataclass(frozen=True)
class NoMatch(MatchResult):
    reason: str

    def __bool__(self) -> bool:
        return False

    @property
    def nodes(self) -> Tuple[GraphNode, ...]:
        return ()


@dataclass(frozen=True)
class TwoNodeFusion(MatchResult):
    """Fast path Conv -> Relu"""
    anchor: GraphNode
    activation: GraphNode

    @property
    def nodes(self) -> Tuple[GraphNode, ...]:
        return (self.anchor, self.activation)


@dataclass(frozen=True)
class ThreeNodeFusion(MatchResult):
    """Fast path Conv -> Add -> Relu; ``extra_input`` is the Add operand not produced by the Conv"""
    anchor: GraphNode
    add: GraphNode
    activation: GraphNode
    extra_input: str

    @property
    def nodes(self) -> Tuple[GraphNode, ...]:
        return (self.anchor, self.add, self.activation)


@dataclass(frozen=True)
class GenericActivationFusion(MatchResult):
    """Generic path Conv -> activation with its ordered parameters"""
    anchor: GraphNode
    activation: GraphNode
    params: Tuple[float, ...] = ()

    @property
    def nodes(self) -> Tuple[GraphNode, ...]:
        return (self.anchor, self.activation)


class PatternMatcher:
    """Evaluates the conv-activation patterns rooted at a candidate anchor"""

    def __init__(self, checker: ProviderCompatibilityChecker):
        self.checker = checker

    def match(self, graph: FusionGraph, node: GraphNode) -> MatchResult:
        """
        Match the patterns anchored at ``node``.

        Nothing is modified. MissingRequiredAttributeError propagates when a
        LeakyRelu consumer has no alpha.
        """
        if not is_supported_optype_version_and_domain(node, "Conv", CONV_VERSIONS):
            return NoMatch("anchor is not a supported Conv")
        if not self.checker.is_supported_provider(node):
            return NoMatch(f"provider '{node.execution_provider}' is not compatible")
        if graph.output_edges_count(node) != 1:
            return NoMatch("anchor does not have exactly one consumer")

        next_node = graph.output_nodes(node)[0]
        if not self.checker.same_provider(node, next_node):
            return NoMatch("consumer is assigned to a different provider")
        if graph.produces_graph_output(node):
            return NoMatch("anchor produces a graph output")

        capability = self.checker.capability_for(node)
        if capability.fast_path:
            return self._match_fast_path(graph, node, next_node, capability)
        return self._match_generic(graph, node, next_node, capability)

    def _match_fast_path(self,
                         graph: FusionGraph,
                         node: GraphNode,
                         next_node: GraphNode,
                         capability: ProviderCapability) -> MatchResult:
        if capability.input_elem_type is not None:
            if not node.inputs or graph.value_elem_type(node.inputs[0]) != capability.input_elem_type:
                return NoMatch("anchor input has an unsupported element type")

        if capability.supports("Relu") and is_supported_optype_version_and_domain(
                next_node, "Relu", ACTIVATION_VERSIONS["Relu"]):
            return TwoNodeFusion(node, next_node)

        if not (capability.residual_add
                and is_supported_optype_version_and_domain(next_node, "Add", ADD_VERSIONS)):
            return NoMatch(f"{next_node.op_type} cannot be fused on the fast path")

        if graph.output_edges_count(next_node) != 1:
            return NoMatch("Add does not have exactly one consumer")
        if graph.produces_graph_output(next_node):
            return NoMatch("Add produces a graph output")

        last_node = graph.output_nodes(next_node)[0]
        if not self.checker.same_provider(node, last_node):
            return NoMatch("Add consumer is assigned to a different provider")
        if not is_supported_optype_version_and_domain(last_node, "Relu", ACTIVATION_VERSIONS["Relu"]):
            return NoMatch(f"Add is followed by {last_node.op_type}, not Relu")

        conv_output = node.outputs[0]
        dependent = [name for name in next_node.inputs if name == conv_output]
        independent = [name for name in next_node.inputs if name != conv_output]
        if len(dependent) != 1 or len(independent) != 1:
            return NoMatch("Add must combine the Conv output with exactly one other input")

        return ThreeNodeFusion(node, next_node, last_node, independent[0])

    def _match_generic(self,
                       graph: FusionGraph,
                       node: GraphNode,
                       next_node: GraphNode,
                       capability: ProviderCapability) -> MatchResult:
        op_type = next_node.op_type
        versions = ACTIVATION_VERSIONS.get(op_type)
        if (versions is None or not capability.supports(op_type)
                or not is_supported_optype_version_and_domain(next_node, op_type, versions)):
            return NoMatch(f"{op_type} cannot be fused for provider '{node.execution_provider}'")

        params = extract_activation_params(graph, next_node)
        if params is None:
            return NoMatch(f"{op_type} parameters are not constant")
        return GenericActivationFusion(node, next_node, tuple(params))
