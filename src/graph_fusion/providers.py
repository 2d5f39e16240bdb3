"""
Execution Provider Capabilities

Which activations each execution provider can fuse into a convolution, and
whether the provider takes the fast path (Relu and residual Add + Relu on
float inputs only) or the generic path (activation with parameters).
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union

import yaml
from onnx import TensorProto

from .errors import FusionConfigError
from .graph import GraphNode

logger = logging.getLogger(__name__)

CPU_EXECUTION_PROVIDER = "CPUExecutionProvider"
CUDA_EXECUTION_PROVIDER = "CUDAExecutionProvider"

GENERIC_ACTIVATIONS = frozenset(["Relu", "Sigmoid", "Tanh", "LeakyRelu", "Clip"])


@dataclass(frozen=True)
class ProviderCapability:
    """Fusion capabilities of one execution provider"""
    name: str
    fast_path: bool = False
    activations: FrozenSet[str] = GENERIC_ACTIVATIONS
    residual_add: bool = False
    input_elem_type: Optional[int] = None  # required element type of the conv input

    def supports(self, op_type: str) -> bool:
        return op_type in self.activations

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "ProviderCapability":
        if not isinstance(data, dict):
            raise FusionConfigError(f"Provider '{name}' must map to a table, got {type(data).__name__}")

        unknown = set(data) - {"fast_path", "activations", "residual_add", "input_elem_type"}
        if unknown:
            raise FusionConfigError(f"Provider '{name}' has unknown keys: {sorted(unknown)}")

        activations = data.get("activations", sorted(GENERIC_ACTIVATIONS))
        if not isinstance(activations, list) or not all(isinstance(a, str) for a in activations):
            raise FusionConfigError(f"Provider '{name}': 'activations' must be a list of op types")

        elem_type = data.get("input_elem_type")
        if elem_type is not None:
            try:
                elem_type = TensorProto.DataType.Value(str(elem_type).upper())
            except ValueError:
                raise FusionConfigError(
                    f"Provider '{name}': unknown tensor element type '{elem_type}'") from None

        return cls(
            name=name,
            fast_path=bool(data.get("fast_path", False)),
            activations=frozenset(activations),
            residual_add=bool(data.get("residual_add", False)),
            input_elem_type=elem_type,
        )


@dataclass
class ProviderTable:
    """Maps execution provider names to capabilities; unlisted providers get ``default``"""
    providers: Dict[str, ProviderCapability] = field(default_factory=dict)
    default: ProviderCapability = field(default_factory=lambda: ProviderCapability(name="*"))

    def capability(self, provider: str) -> ProviderCapability:
        return self.providers.get(provider, self.default)

    @classmethod
    def builtin(cls) -> "ProviderTable":
        """Capabilities of the stock onnxruntime kernels"""
        with_hard_sigmoid = GENERIC_ACTIVATIONS | {"HardSigmoid"}
        return cls(providers={
            CUDA_EXECUTION_PROVIDER: ProviderCapability(
                name=CUDA_EXECUTION_PROVIDER,
                fast_path=True,
                activations=frozenset(["Relu"]),
                residual_add=True,
                input_elem_type=TensorProto.FLOAT,
            ),
            CPU_EXECUTION_PROVIDER: ProviderCapability(
                name=CPU_EXECUTION_PROVIDER, activations=with_hard_sigmoid),
            # unassigned nodes end up on CPU
            "": ProviderCapability(name="", activations=with_hard_sigmoid),
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderTable":
        if not isinstance(data, dict):
            raise FusionConfigError("Provider configuration must be a mapping")

        providers = data.get("providers") or {}
        if not isinstance(providers, dict):
            raise FusionConfigError("'providers' must map provider names to capabilities")

        table = cls(providers={
            str(name): ProviderCapability.from_dict(str(name), entry or {})
            for name, entry in providers.items()
        })
        if data.get("default") is not None:
            table.default = ProviderCapability.from_dict("*", data["default"])
        return table

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ProviderTable":
        """Load a provider table from a YAML file"""
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise FusionConfigError(f"Failed to load provider configuration {path}: {e}") from e

        table = cls.from_dict(data or {})
        logger.info(f"Loaded capabilities for {len(table.providers)} providers from {path}")
        return table


class ProviderCompatibilityChecker:
    """Decides whether nodes may take part in a fusion given their providers"""

    def __init__(self,
                 compatible_execution_providers: Optional[Iterable[str]] = None,
                 table: Optional[ProviderTable] = None):
        # an empty set means every provider is compatible
        self.compatible_execution_providers = frozenset(compatible_execution_providers or ())
        self.table = table if table is not None else ProviderTable.builtin()

    def is_supported_provider(self, node: GraphNode) -> bool:
        return (not self.compatible_execution_providers
                or node.execution_provider in self.compatible_execution_providers)

    @staticmethod
    def same_provider(node: GraphNode, other: GraphNode) -> bool:
        return node.execution_provider == other.execution_provider

    def capability_for(self, node: GraphNode) -> ProviderCapability:
        return self.table.capability(node.execution_provider)
