"""
Fusion Errors

Exceptions raised by the graph fusion passes. A pattern that simply does not
apply is not an error; these cover malformed graphs and bad configuration.
"""

from typing import Optional


class FusionError(Exception):
    """Base class for fusion failures"""


class MissingRequiredAttributeError(FusionError):
    """A matched node lacks an attribute the fused node cannot be built without"""

    def __init__(self, node_name: str, op_type: str, attribute: str):
        self.node_name = node_name
        self.op_type = op_type
        self.attribute = attribute
        super().__init__(
            f"{op_type} node '{node_name}' is missing required attribute '{attribute}'"
        )


class FusionCommitError(FusionError):
    """A fusion commit was rejected before the graph was touched"""

    def __init__(self, message: str, node_index: Optional[int] = None):
        self.node_index = node_index
        super().__init__(message)


class FusionConfigError(FusionError):
    """Provider capability configuration could not be loaded"""


class GraphStructureError(FusionError):
    """The graph cannot be ordered or indexed (cycles, duplicate producers)"""
