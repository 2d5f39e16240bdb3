"""
Fusion Rewriter

Turns a confirmed match into a com.microsoft FusedConv node and commits it.
"""

import logging
from typing import List, Tuple

from .graph import MS_DOMAIN, FusionGraph, GraphNode
from .patterns import GenericActivationFusion, MatchResult, NoMatch, ThreeNodeFusion, TwoNodeFusion

logger = logging.getLogger(__name__)

FUSED_OP_TYPE = "FusedConv"


class FusionRewriter:
    """Builds and commits fused nodes for one graph"""

    def __init__(self, graph: FusionGraph):
        self.graph = graph

    def build_fused_node(self, match: MatchResult) -> GraphNode:
        """Construct the replacement node for ``match`` without inserting it"""
        inputs: List[str]
        params: Tuple[float, ...] = ()

        if isinstance(match, TwoNodeFusion):
            anchor = match.anchor
            name = self.graph.generate_node_name(f"{anchor.name}_{match.activation.name}")
            description = name
            inputs = list(anchor.inputs)
            activation = "Relu"
        elif isinstance(match, ThreeNodeFusion):
            anchor = match.anchor
            name = self.graph.generate_node_name(
                f"{anchor.name}_{match.add.name}_{match.activation.name}")
            description = name
            inputs = list(anchor.inputs) + [match.extra_input]
            activation = "Relu"
        elif isinstance(match, GenericActivationFusion):
            anchor = match.anchor
            name = self.graph.generate_node_name(f"fused {anchor.name}")
            description = f"fused Conv {anchor.name} with activation {match.activation.op_type}"
            inputs = list(anchor.inputs)
            activation = match.activation.op_type
            params = match.params
        elif isinstance(match, NoMatch):
            raise ValueError(f"Cannot rewrite a rejected match: {match.reason}")
        else:
            raise TypeError(f"Unknown match result {type(match).__name__}")

        fused = self.graph.create_node(
            name,
            FUSED_OP_TYPE,
            description,
            inputs,
            [],
            anchor.copy_attributes(),
            MS_DOMAIN,
            execution_provider=anchor.execution_provider,
        )
        fused.add_attribute("activation", activation)
        if params:
            fused.add_attribute("activation_params", list(params))
        return fused

    def commit(self, match: MatchResult) -> GraphNode:
        """
        Replace the matched nodes with a fused node.

        The fused node takes over the outputs of the terminal matched node and
        every matched node is removed in the same step.
        """
        fused = self.build_fused_node(match)
        self.graph.finalize_node_fusion(match.nodes, fused)
        logger.debug(f"Fused {' -> '.join(n.name for n in match.nodes)} into '{fused.name}'")
        return fused
