"""
Fusion Graph

An index-stable arena over an ONNX graph. Nodes are addressed by integer
index; removing a node leaves its slot empty so that indices captured before a
rewrite can still be looked up afterwards and report the node as absent.

Edges are derived from value names: a consumer edge exists for every input
slot (explicit, or implicit through a nested subgraph) that reads a value
produced by a node of the same graph.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set

import onnx
from onnx import AttributeProto, GraphProto, ModelProto, TensorProto, helper

from .errors import FusionCommitError, GraphStructureError

logger = logging.getLogger(__name__)

ONNX_DOMAIN = ""
MS_DOMAIN = "com.microsoft"
MS_DOMAIN_VERSION = 1


def normalize_domain(domain: str) -> str:
    """Map the ONNX domain aliases onto the empty-string default domain"""
    return ONNX_DOMAIN if domain in ("", "ai.onnx") else domain


def resolve_since_version(op_type: str, domain: str, opset_imports: Dict[str, int]) -> int:
    """
    Resolve the schema version a node binds to under the given opset imports.

    Returns -1 when the domain is not imported or the op has no registered schema.
    """
    version = opset_imports.get(domain)
    if version is None:
        return -1
    try:
        return onnx.defs.get_schema(op_type, version, domain).since_version
    except onnx.defs.SchemaError:
        return -1


def _copy_attribute(attr: AttributeProto) -> AttributeProto:
    copied = AttributeProto()
    copied.CopyFrom(attr)
    return copied


def _constant_node_value(node: "GraphNode") -> Optional[TensorProto]:
    if node.op_type != "Constant" or node.domain != ONNX_DOMAIN:
        return None
    value = node.get_attribute("value")
    if value is not None and value.type == AttributeProto.TENSOR:
        return value.t
    value = node.get_attribute("value_float")
    if value is not None:
        return helper.make_tensor(node.outputs[0], TensorProto.FLOAT, [], [value.f])
    return None


@dataclass(eq=False)
class GraphNode:
    """A node of a FusionGraph"""
    index: int
    name: str
    op_type: str
    domain: str = ONNX_DOMAIN
    since_version: int = -1
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    attributes: Dict[str, AttributeProto] = field(default_factory=dict)
    execution_provider: str = ""
    doc_string: str = ""
    subgraphs: Dict[str, "FusionGraph"] = field(default_factory=dict)

    def get_attribute(self, name: str) -> Optional[AttributeProto]:
        return self.attributes.get(name)

    def add_attribute(self, name: str, value: Any) -> None:
        self.attributes[name] = helper.make_attribute(name, value)

    @property
    def implicit_inputs(self) -> List[str]:
        """Outer-scope values read by nested subgraphs"""
        names: List[str] = []
        for subgraph in self.subgraphs.values():
            for name in subgraph.outer_scope_references():
                if name not in names:
                    names.append(name)
        return names

    def copy_attributes(self) -> Dict[str, AttributeProto]:
        return {name: _copy_attribute(attr) for name, attr in self.attributes.items()}

    def __repr__(self) -> str:
        return f"GraphNode({self.index}, {self.op_type!r}, name={self.name!r})"


class FusionGraph:
    """
    Mutable graph view used by the fusion passes.

    Build one with ``from_onnx`` / ``from_model`` and serialise it back with
    ``to_onnx`` / ``to_model``. Execution providers are not part of the ONNX
    format, so the provider given at load time is assigned to every node.
    """

    def __init__(self,
                 name: str = "",
                 opset_imports: Optional[Dict[str, int]] = None,
                 parent: Optional["FusionGraph"] = None):
        self.name = name
        if opset_imports is None:
            opset_imports = {ONNX_DOMAIN: onnx.defs.onnx_opset_version()}
        self.opset_imports = dict(opset_imports)
        self.parent = parent

        self._nodes: List[Optional[GraphNode]] = []
        self._node_names: Set[str] = set()
        self._name_counter = 0
        self._producer: Dict[str, int] = {}
        self._consumers: Dict[str, List[int]] = {}
        self._consumed: Dict[int, List[str]] = {}

        self._template = GraphProto(name=name)
        self._model_template: Optional[ModelProto] = None
        self._input_names: Set[str] = set()
        self._output_names: List[str] = []
        self._initializers: Dict[str, TensorProto] = {}
        self._value_types: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Construction

    @classmethod
    def from_onnx(cls,
                  graph: GraphProto,
                  opset_imports: Optional[Dict[str, int]] = None,
                  execution_provider: str = "",
                  parent: Optional["FusionGraph"] = None) -> "FusionGraph":
        """Build a FusionGraph (and its nested subgraphs) from an ONNX graph"""
        result = cls(graph.name, opset_imports, parent)

        template = GraphProto()
        template.CopyFrom(graph)
        template.ClearField("node")
        result._template = template

        result._input_names = {value.name for value in graph.input}
        result._output_names = [value.name for value in graph.output]
        result._initializers = {tensor.name: tensor for tensor in graph.initializer}
        for tensor in graph.initializer:
            result._value_types[tensor.name] = tensor.data_type
        for value in list(graph.input) + list(graph.value_info) + list(graph.output):
            if value.type.HasField("tensor_type") and value.type.tensor_type.elem_type:
                result._value_types[value.name] = value.type.tensor_type.elem_type

        for proto in graph.node:
            domain = normalize_domain(proto.domain)
            subgraphs = {}
            for attr in proto.attribute:
                if attr.type == AttributeProto.GRAPH:
                    subgraphs[attr.name] = cls.from_onnx(
                        attr.g, result.opset_imports, execution_provider, parent=result)
            result.add_node(
                proto.name,
                proto.op_type,
                inputs=list(proto.input),
                outputs=list(proto.output),
                attributes={attr.name: _copy_attribute(attr) for attr in proto.attribute},
                domain=domain,
                execution_provider=execution_provider,
                doc_string=proto.doc_string,
                subgraphs=subgraphs,
            )

        return result

    @classmethod
    def from_model(cls, model: ModelProto, execution_provider: str = "") -> "FusionGraph":
        """Build a FusionGraph from a model, keeping the model envelope for ``to_model``"""
        # intermediate values only carry element types once inference has run
        try:
            model = onnx.shape_inference.infer_shapes(model)
        except onnx.shape_inference.InferenceError as e:
            logger.warning(f"Shape inference failed, using recorded value types only: {e}")

        opset_imports = {
            normalize_domain(opset.domain): opset.version for opset in model.opset_import
        }
        result = cls.from_onnx(model.graph, opset_imports, execution_provider)

        envelope = ModelProto()
        envelope.CopyFrom(model)
        envelope.ClearField("graph")
        result._model_template = envelope
        return result

    def add_node(self,
                 name: str,
                 op_type: str,
                 inputs: Sequence[str] = (),
                 outputs: Sequence[str] = (),
                 attributes: Optional[Dict[str, AttributeProto]] = None,
                 domain: str = ONNX_DOMAIN,
                 execution_provider: str = "",
                 doc_string: str = "",
                 subgraphs: Optional[Dict[str, "FusionGraph"]] = None,
                 since_version: Optional[int] = None) -> GraphNode:
        """Create a node and insert it into the graph"""
        node = self.create_node(name, op_type, doc_string, inputs, outputs,
                                attributes or {}, domain, execution_provider)
        if subgraphs:
            node.subgraphs = dict(subgraphs)
        if since_version is not None:
            node.since_version = since_version
        self._insert(node)
        return node

    def create_node(self,
                    name: str,
                    op_type: str,
                    description: str,
                    inputs: Sequence[str],
                    outputs: Sequence[str],
                    attributes: Dict[str, AttributeProto],
                    domain: str = ONNX_DOMAIN,
                    execution_provider: str = "") -> GraphNode:
        """
        Construct a node that is not yet part of the graph.

        The node becomes visible only once it is inserted, either by
        ``add_node`` or as the replacement of ``finalize_node_fusion``.
        """
        domain = normalize_domain(domain)
        if domain == MS_DOMAIN:
            # contrib op schemas live in onnxruntime, not in onnx.defs
            since_version = self.opset_imports.get(MS_DOMAIN, MS_DOMAIN_VERSION)
        else:
            since_version = resolve_since_version(op_type, domain, self.opset_imports)
        return GraphNode(
            index=-1,
            name=name,
            op_type=op_type,
            domain=domain,
            since_version=since_version,
            inputs=list(inputs),
            outputs=list(outputs),
            attributes=dict(attributes),
            execution_provider=execution_provider,
            doc_string=description,
        )

    # ------------------------------------------------------------------
    # Queries

    def get_node(self, index: int) -> Optional[GraphNode]:
        """Return the node at ``index`` or None if it was removed or never existed"""
        if 0 <= index < len(self._nodes):
            return self._nodes[index]
        return None

    def nodes(self) -> Iterator[GraphNode]:
        for node in self._nodes:
            if node is not None:
                yield node

    def __len__(self) -> int:
        return sum(1 for _ in self.nodes())

    def find_node(self, name: str) -> Optional[GraphNode]:
        for node in self.nodes():
            if node.name == name:
                return node
        return None

    def producer_of(self, value: str) -> Optional[GraphNode]:
        index = self._producer.get(value)
        return None if index is None else self._nodes[index]

    def output_edges_count(self, node: GraphNode) -> int:
        return sum(len(self._consumers.get(output, ())) for output in node.outputs if output)

    def output_nodes(self, node: GraphNode) -> List[GraphNode]:
        """Consumers of ``node``, one entry per edge"""
        consumers = []
        for output in node.outputs:
            if not output:
                continue
            for index in self._consumers.get(output, ()):
                consumers.append(self._nodes[index])
        return consumers

    def produces_graph_output(self, node: GraphNode) -> bool:
        return any(output in self._output_names for output in node.outputs if output)

    def value_elem_type(self, name: str) -> Optional[int]:
        """Tensor element type of a value, searching enclosing graphs as well"""
        elem_type = self._value_types.get(name)
        if elem_type is not None:
            return elem_type
        if self.parent is not None and not self._is_local_value(name):
            return self.parent.value_elem_type(name)
        return None

    def get_constant_initializer(self, name: str, check_outer_scope: bool = True) -> Optional[TensorProto]:
        """
        Return the initializer for ``name`` if it is constant.

        An initializer that is also listed as a graph input can be overridden
        at run time and is not constant. The output of a Constant node counts
        as a constant initializer.
        """
        tensor = self._initializers.get(name)
        if tensor is not None:
            return None if name in self._input_names else tensor
        producer = self.producer_of(name)
        if producer is not None:
            return _constant_node_value(producer)
        if check_outer_scope and self.parent is not None and not self._is_local_value(name):
            return self.parent.get_constant_initializer(name)
        return None

    def outer_scope_references(self) -> List[str]:
        """Values read by this graph that are defined in an enclosing graph"""
        local = self._input_names | set(self._initializers) | set(self._producer)
        references: List[str] = []
        for node in self.nodes():
            for name in node.inputs + node.implicit_inputs:
                if name and name not in local and name not in references:
                    references.append(name)
        return references

    def topological_order(self) -> List[int]:
        """Indices of the live nodes, producers before consumers, ties by index"""
        in_degree: Dict[int, int] = {}
        successors: Dict[int, List[int]] = {}
        for node in self.nodes():
            in_degree.setdefault(node.index, 0)
            for name in node.inputs + node.implicit_inputs:
                producer = self._producer.get(name) if name else None
                if producer is None:
                    continue
                in_degree[node.index] += 1
                successors.setdefault(producer, []).append(node.index)

        ready = [index for index, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            index = heapq.heappop(ready)
            order.append(index)
            for successor in successors.get(index, ()):
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    heapq.heappush(ready, successor)

        if len(order) != len(in_degree):
            raise GraphStructureError(f"Graph '{self.name}' contains a cycle")
        return order

    def generate_node_name(self, base_name: str) -> str:
        """Return a node name derived from ``base_name`` that is unused in this graph"""
        name = base_name
        while name in self._node_names:
            name = f"{base_name}_token_{self._name_counter}"
            self._name_counter += 1
        self._node_names.add(name)
        return name

    # ------------------------------------------------------------------
    # Mutation

    def finalize_node_fusion(self, nodes: Sequence[GraphNode], replacement: GraphNode) -> None:
        """
        Replace the linear chain ``nodes`` with ``replacement``.

        The replacement takes over the outputs (and so the consumer edges) of
        the last node in the chain, every node in the chain is removed and the
        replacement is inserted. All checks run before the graph is touched;
        on FusionCommitError the graph is unchanged.
        """
        if not nodes:
            raise FusionCommitError("No nodes given to fuse")
        if replacement.index != -1:
            raise FusionCommitError(
                f"Replacement node '{replacement.name}' is already part of a graph", replacement.index)

        matched: Set[int] = set()
        for node in nodes:
            if self.get_node(node.index) is not node:
                raise FusionCommitError(
                    f"Node '{node.name}' is not present in graph '{self.name}'", node.index)
            if node.index in matched:
                raise FusionCommitError(f"Node '{node.name}' listed twice in fusion", node.index)
            matched.add(node.index)

        terminal = nodes[-1]
        for node in nodes[:-1]:
            for output in node.outputs:
                if not output:
                    continue
                if output in self._output_names:
                    raise FusionCommitError(
                        f"Fused value '{output}' of '{node.name}' is a graph output", node.index)
                if output in replacement.inputs:
                    raise FusionCommitError(
                        f"Replacement '{replacement.name}' reads fused value '{output}'", node.index)
                for consumer in self._consumers.get(output, ()):
                    if consumer not in matched:
                        raise FusionCommitError(
                            f"Fused value '{output}' of '{node.name}' escapes the matched nodes",
                            node.index)

        replacement.outputs = list(terminal.outputs)
        for node in nodes:
            self._remove(node)
        self._insert(replacement)

    def _insert(self, node: GraphNode) -> None:
        for output in node.outputs:
            if output and output in self._producer:
                raise GraphStructureError(
                    f"Value '{output}' is produced by more than one node in graph '{self.name}'")
        node.index = len(self._nodes)
        self._nodes.append(node)
        self._node_names.add(node.name)
        for output in node.outputs:
            if output:
                self._producer[output] = node.index
        # implicit inputs can shrink when nested subgraphs are rewritten
        consumed = [name for name in node.inputs + node.implicit_inputs if name]
        self._consumed[node.index] = consumed
        for name in consumed:
            self._consumers.setdefault(name, []).append(node.index)

    def _remove(self, node: GraphNode) -> None:
        self._nodes[node.index] = None
        for output in node.outputs:
            if output and self._producer.get(output) == node.index:
                del self._producer[output]
        for name in self._consumed.pop(node.index, ()):
            if name in self._consumers:
                self._consumers[name].remove(node.index)
                if not self._consumers[name]:
                    del self._consumers[name]

    def _is_local_value(self, name: str) -> bool:
        return name in self._producer or name in self._input_names

    # ------------------------------------------------------------------
    # Serialisation

    def to_onnx(self) -> GraphProto:
        """Serialise to an ONNX graph with nodes in topological order"""
        graph = GraphProto()
        graph.CopyFrom(self._template)
        graph.name = self.name

        for index in self.topological_order():
            graph.node.append(self._node_to_proto(self._nodes[index]))

        live_values = set(self._producer) | set(self._consumers)
        stale = [value for value in graph.value_info if value.name not in live_values]
        for value in stale:
            graph.value_info.remove(value)
        return graph

    def to_model(self) -> ModelProto:
        """Serialise to a model, registering the com.microsoft opset if fused nodes need it"""
        if self._model_template is not None:
            model = ModelProto()
            model.CopyFrom(self._model_template)
            model.graph.CopyFrom(self.to_onnx())
        else:
            model = helper.make_model(
                self.to_onnx(),
                opset_imports=[helper.make_opsetid(domain, version)
                               for domain, version in self.opset_imports.items()])

        imported = {normalize_domain(opset.domain) for opset in model.opset_import}
        if MS_DOMAIN not in imported and self._uses_domain(MS_DOMAIN):
            model.opset_import.append(helper.make_opsetid(MS_DOMAIN, MS_DOMAIN_VERSION))
        return model

    def _uses_domain(self, domain: str) -> bool:
        for node in self.nodes():
            if node.domain == domain:
                return True
            if any(subgraph._uses_domain(domain) for subgraph in node.subgraphs.values()):
                return True
        return False

    def _node_to_proto(self, node: GraphNode) -> onnx.NodeProto:
        proto = helper.make_node(
            node.op_type,
            node.inputs,
            node.outputs,
            name=node.name,
            doc_string=node.doc_string or None,
            domain=node.domain or None,
        )
        for name, attr in node.attributes.items():
            attr = _copy_attribute(attr)
            if name in node.subgraphs:
                attr.g.CopyFrom(node.subgraphs[name].to_onnx())
            proto.attribute.append(attr)
        return proto
