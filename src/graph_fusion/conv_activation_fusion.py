"""
Conv + Activation Fusion Pass

Walks a graph once in topological order and replaces every
Conv + activation chain it recognises with a single FusedConv node.
Nested subgraphs (If / Loop / Scan bodies) are processed before the node that
owns them.

The traversal order is captured before anything is rewritten, so fused nodes
created during a run are never revisited by the same run. Chains that only
become fusable after a rewrite need another invocation; see GraphFuser.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from .errors import FusionError
from .graph import FusionGraph
from .patterns import PatternMatcher
from .providers import ProviderCompatibilityChecker, ProviderTable
from .rewriter import FusionRewriter

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """
    Outcome of one pass invocation.

    ``modified`` reports whether any fusion was committed, including fusions
    committed before an error aborted the pass.
    """
    modified: bool = False
    error: Optional[FusionError] = None
    stats: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class ConvActivationFusion:
    """
    Fuses Conv with a following activation.

    Args:
        compatible_execution_providers: providers whose nodes may be fused;
            empty or None allows every provider
        provider_table: capabilities per provider (built-in table if None)
    """

    name = "ConvActivationFusion"

    def __init__(self,
                 compatible_execution_providers: Optional[Iterable[str]] = None,
                 provider_table: Optional[ProviderTable] = None):
        self.checker = ProviderCompatibilityChecker(compatible_execution_providers, provider_table)
        self.matcher = PatternMatcher(self.checker)

    def apply(self, graph: FusionGraph) -> PassResult:
        """Run the pass once over ``graph`` and its nested subgraphs"""
        stats: Dict[str, int] = {}
        try:
            self._apply_impl(graph, stats, graph_level=0)
        except FusionError as e:
            logger.error(f"{self.name} aborted on graph '{graph.name}': {e}")
            return PassResult(modified=bool(stats), error=e, stats=stats)

        if stats:
            logger.info(f"{self.name} applied {sum(stats.values())} fusions to graph '{graph.name}': {stats}")
        return PassResult(modified=bool(stats), stats=stats)

    def _apply_impl(self, graph: FusionGraph, stats: Dict[str, int], graph_level: int) -> None:
        rewriter = FusionRewriter(graph)

        for index in graph.topological_order():
            node = graph.get_node(index)
            # removed by an earlier fusion in this run
            if node is None:
                continue

            for attr_name, subgraph in node.subgraphs.items():
                logger.debug(f"Entering subgraph '{attr_name}' of '{node.name}' (level {graph_level + 1})")
                self._apply_impl(subgraph, stats, graph_level + 1)

            match = self.matcher.match(graph, node)
            if not match:
                continue

            rewriter.commit(match)
            kind = type(match).__name__
            stats[kind] = stats.get(kind, 0) + 1


def fuse_conv_activations(graph: FusionGraph,
                          compatible_execution_providers: Optional[Iterable[str]] = None,
                          provider_table: Optional[ProviderTable] = None) -> PassResult:
    """Run ConvActivationFusion once over ``graph``"""
    return ConvActivationFusion(compatible_execution_providers, provider_table).apply(graph)
