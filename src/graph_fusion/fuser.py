"""
Graph Fuser

Re-runs fusion passes over a graph until none of them changes it, and
convenience wrappers for fusing whole ONNX models.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import onnx

from .conv_activation_fusion import ConvActivationFusion
from .graph import FusionGraph
from .providers import ProviderTable

logger = logging.getLogger(__name__)


class GraphFuser:
    """
    Applies fusion passes to a graph until a fixed point.

    Example usage:
        fuser = GraphFuser([ConvActivationFusion({"CPUExecutionProvider"})])
        fuser.fuse(graph)
        print(fuser.get_stats())
    """

    def __init__(self, passes: Optional[Iterable[Any]] = None, max_iterations: int = 10):
        self.passes: List[Any] = list(passes) if passes is not None else [ConvActivationFusion()]
        self.max_iterations = max_iterations
        self.iterations = 0
        self.fusion_stats: Dict[str, Dict[str, int]] = {}

    def fuse(self, graph: FusionGraph) -> FusionGraph:
        """
        Run every pass repeatedly until no pass reports a modification.

        Raises:
            FusionError: a pass aborted; fusions committed before it remain
        """
        self.iterations = 0
        self.fusion_stats = {}

        for iteration in range(self.max_iterations):
            modified = False
            for fusion_pass in self.passes:
                result = fusion_pass.apply(graph)
                by_kind = self.fusion_stats.setdefault(fusion_pass.name, {})
                for kind, count in result.stats.items():
                    by_kind[kind] = by_kind.get(kind, 0) + count
                result.raise_for_error()
                modified = modified or result.modified

            if not modified:
                logger.info(f"Fusion complete after {iteration} iterations")
                break
            self.iterations = iteration + 1
        else:
            logger.warning(f"Fusion stopped after {self.max_iterations} iterations without reaching a fixed point")

        return graph

    def get_stats(self) -> Dict[str, Any]:
        return {
            'total_fusions': sum(sum(kinds.values()) for kinds in self.fusion_stats.values()),
            'iterations': self.iterations,
            'by_pass': {name: dict(kinds) for name, kinds in self.fusion_stats.items()},
        }


def fuse_model(model: onnx.ModelProto,
               execution_provider: str = "",
               compatible_execution_providers: Optional[Iterable[str]] = None,
               provider_table: Optional[ProviderTable] = None,
               max_iterations: int = 10) -> Tuple[onnx.ModelProto, Dict[str, Any]]:
    """
    Fuse conv-activation chains in an ONNX model.

    Args:
        model: model to fuse; it is not modified
        execution_provider: provider assigned to every node before fusing
        compatible_execution_providers: providers whose nodes may be fused
        provider_table: provider capabilities (built-in table if None)
        max_iterations: bound on the fixed-point loop

    Returns:
        Tuple of (fused_model, fusion_stats)
    """
    graph = FusionGraph.from_model(model, execution_provider)
    fuser = GraphFuser([ConvActivationFusion(compatible_execution_providers, provider_table)],
                       max_iterations=max_iterations)
    fuser.fuse(graph)
    return graph.to_model(), fuser.get_stats()
