"""
Graph Fusion

Conv + activation fusion for ONNX computation graphs: recognises a
convolution followed by an activation (or a residual Add and Relu) and
replaces the chain with a single com.microsoft FusedConv node.
"""

from .errors import (FusionError, MissingRequiredAttributeError, FusionCommitError,
                     FusionConfigError, GraphStructureError)
from .graph import FusionGraph, GraphNode
from .providers import (ProviderCapability, ProviderTable, ProviderCompatibilityChecker,
                        CPU_EXECUTION_PROVIDER, CUDA_EXECUTION_PROVIDER)
from .activations import extract_activation_params, get_clip_constant_min_max
from .patterns import (PatternMatcher, MatchResult, NoMatch, TwoNodeFusion,
                       ThreeNodeFusion, GenericActivationFusion)
from .rewriter import FusionRewriter
from .conv_activation_fusion import ConvActivationFusion, PassResult, fuse_conv_activations
from .fuser import GraphFuser, fuse_model

__version__ = "1.0.0"
__all__ = [
    # Errors
    "FusionError",
    "MissingRequiredAttributeError",
    "FusionCommitError",
    "FusionConfigError",
    "GraphStructureError",

    # Graph
    "FusionGraph",
    "GraphNode",

    # Providers
    "ProviderCapability",
    "ProviderTable",
    "ProviderCompatibilityChecker",
    "CPU_EXECUTION_PROVIDER",
    "CUDA_EXECUTION_PROVIDER",

    # Matching and rewriting
    "extract_activation_params",
    "get_clip_constant_min_max",
    "PatternMatcher",
    "MatchResult",
    "NoMatch",
    "TwoNodeFusion",
    "ThreeNodeFusion",
    "GenericActivationFusion",
    "FusionRewriter",

    # Passes
    "ConvActivationFusion",
    "PassResult",
    "fuse_conv_activations",
    "GraphFuser",
    "fuse_model",
]
