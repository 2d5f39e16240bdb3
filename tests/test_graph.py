#!/usr/bin/env python3
"""
Tests for the FusionGraph arena
"""

import unittest

from onnx import TensorProto, helper, numpy_helper

from graph_builders import conv, conv_activation_model, load, make_model, scalar

from graph_fusion.errors import FusionCommitError, GraphStructureError
from graph_fusion.graph import MS_DOMAIN, FusionGraph


class TestGraphConstruction(unittest.TestCase):
    """Tests for building a FusionGraph from ONNX"""

    def test_from_model(self):
        graph = load(conv_activation_model("Relu"), "CPUExecutionProvider")

        self.assertEqual(len(graph), 2)
        conv_node = graph.find_node("conv")
        self.assertEqual(conv_node.op_type, "Conv")
        self.assertEqual(conv_node.since_version, 11)
        self.assertEqual(conv_node.execution_provider, "CPUExecutionProvider")
        self.assertEqual(graph.find_node("act").since_version, 13)

    def test_ai_onnx_domain_normalized(self):
        node = helper.make_node("Relu", ["X"], ["Y"], name="relu", domain="ai.onnx")
        graph = load(make_model([node]))
        self.assertEqual(graph.find_node("relu").domain, "")
        self.assertEqual(graph.find_node("relu").since_version, 13)

    def test_unknown_op_has_no_version(self):
        node = helper.make_node("Mystery", ["X"], ["Y"], name="m", domain="custom.domain")
        graph = load(make_model([node]))
        self.assertEqual(graph.find_node("m").since_version, -1)

    def test_duplicate_producer_rejected(self):
        nodes = [
            helper.make_node("Relu", ["X"], ["Y"], name="a"),
            helper.make_node("Relu", ["X"], ["Y"], name="b"),
        ]
        with self.assertRaises(GraphStructureError):
            load(make_model(nodes))


class TestGraphQueries(unittest.TestCase):
    """Tests for edge, output and initializer queries"""

    def test_output_edges(self):
        nodes = [
            conv(),
            helper.make_node("Relu", ["conv_out"], ["Y"], name="relu"),
            helper.make_node("Shape", ["conv_out"], ["S"], name="shape"),
        ]
        graph = load(make_model(nodes, outputs=("Y", "S")))
        conv_node = graph.find_node("conv")

        self.assertEqual(graph.output_edges_count(conv_node), 2)
        self.assertEqual([n.name for n in graph.output_nodes(conv_node)], ["relu", "shape"])
        self.assertFalse(graph.produces_graph_output(conv_node))
        self.assertTrue(graph.produces_graph_output(graph.find_node("relu")))

    def test_same_value_twice_counts_two_edges(self):
        nodes = [conv(), helper.make_node("Add", ["conv_out", "conv_out"], ["Y"], name="add")]
        graph = load(make_model(nodes))
        self.assertEqual(graph.output_edges_count(graph.find_node("conv")), 2)

    def test_subgraph_reference_is_an_edge(self):
        then_branch = helper.make_graph(
            [helper.make_node("Identity", ["conv_out"], ["then_out"], name="then_id")],
            "then", [], [helper.make_tensor_value_info("then_out", TensorProto.FLOAT, None)])
        else_branch = helper.make_graph(
            [helper.make_node("Identity", ["X"], ["else_out"], name="else_id")],
            "else", [], [helper.make_tensor_value_info("else_out", TensorProto.FLOAT, None)])
        nodes = [
            conv(),
            helper.make_node("Relu", ["conv_out"], ["Y"], name="relu"),
            helper.make_node("If", ["cond"], ["Z"], name="if",
                             then_branch=then_branch, else_branch=else_branch),
        ]
        cond = helper.make_tensor_value_info("cond", TensorProto.BOOL, [])
        graph = load(make_model(nodes, outputs=("Y", "Z"), extra_inputs=[cond]))

        if_node = graph.find_node("if")
        self.assertCountEqual(if_node.implicit_inputs, ["conv_out", "X"])
        self.assertEqual(graph.output_edges_count(graph.find_node("conv")), 2)

    def test_constant_initializer(self):
        nodes = [helper.make_node("Clip", ["X", "lo", "hi"], ["Y"], name="clip")]
        overridable = helper.make_tensor_value_info("hi", TensorProto.FLOAT, [])
        graph = load(make_model(nodes, extra_inputs=[overridable],
                                initializers=[scalar("lo", 0.0), scalar("hi", 6.0)]))

        self.assertIsNotNone(graph.get_constant_initializer("lo"))
        self.assertIsNone(graph.get_constant_initializer("hi"))
        self.assertIsNone(graph.get_constant_initializer("X"))

    def test_constant_node_output_is_constant_initializer(self):
        nodes = [
            helper.make_node("Constant", [], ["lo"], name="lo_const", value=scalar("lo_value", 0.0)),
            helper.make_node("Relu", ["X"], ["r"], name="relu"),
            helper.make_node("Clip", ["r", "lo"], ["Y"], name="clip"),
        ]
        graph = load(make_model(nodes))

        self.assertEqual(float(numpy_helper.to_array(graph.get_constant_initializer("lo"))), 0.0)
        self.assertIsNone(graph.get_constant_initializer("r"))

    def test_intermediate_value_types_inferred(self):
        nodes = [conv(), helper.make_node("Relu", ["conv_out"], ["Y"], name="relu")]
        graph = load(make_model(nodes))
        self.assertEqual(graph.value_elem_type("conv_out"), TensorProto.FLOAT)

    def test_outer_scope_lookups(self):
        body = helper.make_graph(
            [helper.make_node("Relu", ["X"], ["then_out"], name="inner")],
            "then", [], [helper.make_tensor_value_info("then_out", TensorProto.FLOAT, None)])
        nodes = [helper.make_node("If", ["cond"], ["Y"], name="if",
                                  then_branch=body, else_branch=body)]
        cond = helper.make_tensor_value_info("cond", TensorProto.BOOL, [])
        graph = load(make_model(nodes, extra_inputs=[cond]))

        inner = graph.find_node("if").subgraphs["then_branch"]
        self.assertIs(inner.parent, graph)
        self.assertEqual(inner.value_elem_type("X"), TensorProto.FLOAT)
        self.assertIsNotNone(inner.get_constant_initializer("W"))
        self.assertIsNone(inner.value_elem_type("missing"))


class TestTopologicalOrder(unittest.TestCase):
    """Tests for the traversal snapshot"""

    def test_out_of_order_nodes(self):
        nodes = [helper.make_node("Relu", ["conv_out"], ["Y"], name="relu"), conv()]
        graph = load(make_model(nodes))
        order = graph.topological_order()
        self.assertEqual([graph.get_node(i).name for i in order], ["conv", "relu"])

    def test_cycle_detected(self):
        graph = FusionGraph("cyclic")
        graph.add_node("a", "Relu", inputs=["b_out"], outputs=["a_out"])
        graph.add_node("b", "Relu", inputs=["a_out"], outputs=["b_out"])
        with self.assertRaises(GraphStructureError):
            graph.topological_order()


class TestFinalizeNodeFusion(unittest.TestCase):
    """Tests for the atomic fusion commit"""

    def setUp(self):
        self.graph = load(conv_activation_model("Relu"))
        self.conv = self.graph.find_node("conv")
        self.act = self.graph.find_node("act")

    def _replacement(self):
        return self.graph.create_node("fused", "FusedConv", "", ["X", "W"], [], {}, MS_DOMAIN)

    def test_commit(self):
        replacement = self._replacement()
        self.graph.finalize_node_fusion([self.conv, self.act], replacement)

        self.assertEqual(len(self.graph), 1)
        self.assertIsNone(self.graph.get_node(self.conv.index))
        self.assertIsNone(self.graph.get_node(self.act.index))
        self.assertIs(self.graph.get_node(replacement.index), replacement)
        self.assertEqual(replacement.outputs, ["Y"])
        self.assertIs(self.graph.producer_of("Y"), replacement)
        self.assertEqual(replacement.since_version, 1)

    def test_removed_node_rejected(self):
        self.graph.finalize_node_fusion([self.conv, self.act], self._replacement())
        before = self.graph.to_model().SerializeToString()

        with self.assertRaises(FusionCommitError):
            self.graph.finalize_node_fusion([self.conv, self.act], self._replacement())
        self.assertEqual(self.graph.to_model().SerializeToString(), before)

    def test_escaping_value_rejected(self):
        nodes = [
            conv(),
            helper.make_node("Relu", ["conv_out"], ["Y"], name="relu"),
            helper.make_node("Shape", ["conv_out"], ["S"], name="shape"),
        ]
        graph = load(make_model(nodes, outputs=("Y", "S")))
        before = graph.to_model().SerializeToString()
        replacement = graph.create_node("fused", "FusedConv", "", ["X", "W"], [], {}, MS_DOMAIN)

        with self.assertRaises(FusionCommitError):
            graph.finalize_node_fusion([graph.find_node("conv"), graph.find_node("relu")], replacement)
        self.assertEqual(len(graph), 3)
        self.assertEqual(graph.to_model().SerializeToString(), before)

    def test_replacement_already_inserted(self):
        replacement = self._replacement()
        self.graph.finalize_node_fusion([self.conv, self.act], replacement)
        with self.assertRaises(FusionCommitError):
            self.graph.finalize_node_fusion([replacement], replacement)

    def test_generate_node_name(self):
        self.assertEqual(self.graph.generate_node_name("fresh"), "fresh")
        first = self.graph.generate_node_name("conv")
        second = self.graph.generate_node_name("conv")
        self.assertNotIn(first, ("conv", second))
        self.assertTrue(first.startswith("conv_"))


class TestSerialisation(unittest.TestCase):
    """Tests for writing graphs back to ONNX"""

    def test_round_trip(self):
        model = conv_activation_model("Relu")
        round_tripped = load(model).to_model()
        self.assertEqual([n.name for n in round_tripped.graph.node], ["conv", "act"])
        self.assertEqual(round_tripped.opset_import, model.opset_import)

    def test_to_model_after_fusion(self):
        value_info = [helper.make_tensor_value_info("conv_out", TensorProto.FLOAT, None)]
        nodes = [conv(), helper.make_node("Relu", ["conv_out"], ["Y"], name="act")]
        graph = load(make_model(nodes, value_info=value_info))
        replacement = graph.create_node("fused", "FusedConv", "", ["X", "W"], [], {}, MS_DOMAIN)
        graph.finalize_node_fusion([graph.find_node("conv"), graph.find_node("act")], replacement)

        model = graph.to_model()
        self.assertEqual([n.op_type for n in model.graph.node], ["FusedConv"])
        self.assertEqual(model.graph.node[0].domain, MS_DOMAIN)
        self.assertEqual(len(model.graph.value_info), 0)
        self.assertIn(MS_DOMAIN, [opset.domain for opset in model.opset_import])


if __name__ == '__main__':
    unittest.main(verbosity=2)
