#!/usr/bin/env python3
"""
Tests for execution provider capabilities
"""

import os
import tempfile
import unittest

import yaml
from onnx import TensorProto

from graph_builders import conv_activation_model, load

from graph_fusion.errors import FusionConfigError
from graph_fusion.providers import (CPU_EXECUTION_PROVIDER, CUDA_EXECUTION_PROVIDER,
                                    ProviderCapability, ProviderCompatibilityChecker,
                                    ProviderTable)

PATTERN_DIR = os.path.join(os.path.dirname(__file__), '..', 'patterns')


class TestProviderTable(unittest.TestCase):
    """Tests for the provider capability table"""

    def test_builtin_table(self):
        table = ProviderTable.builtin()

        cuda = table.capability(CUDA_EXECUTION_PROVIDER)
        self.assertTrue(cuda.fast_path)
        self.assertTrue(cuda.residual_add)
        self.assertEqual(cuda.input_elem_type, TensorProto.FLOAT)

        for provider in (CPU_EXECUTION_PROVIDER, ""):
            capability = table.capability(provider)
            self.assertFalse(capability.fast_path)
            self.assertTrue(capability.supports("HardSigmoid"))
            self.assertTrue(capability.supports("LeakyRelu"))

        other = table.capability("ROCMExecutionProvider")
        self.assertFalse(other.fast_path)
        self.assertFalse(other.supports("HardSigmoid"))
        self.assertTrue(other.supports("Clip"))

    def test_shipped_yaml_matches_builtin(self):
        loaded = ProviderTable.from_yaml(os.path.join(PATTERN_DIR, 'conv_activation.yaml'))
        builtin = ProviderTable.builtin()

        self.assertEqual(set(loaded.providers), set(builtin.providers))
        for name, capability in builtin.providers.items():
            self.assertEqual(loaded.providers[name], capability)
        self.assertEqual(loaded.default.activations, builtin.default.activations)

    def _write_yaml(self, data):
        handle = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False)
        with handle:
            yaml.safe_dump(data, handle)
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def test_custom_yaml(self):
        path = self._write_yaml({
            'providers': {'MyProvider': {'activations': ['Relu']}},
            'default': {'activations': ['Relu', 'Tanh']},
        })
        table = ProviderTable.from_yaml(path)

        self.assertEqual(table.capability('MyProvider').activations, frozenset(['Relu']))
        self.assertEqual(table.capability('Other').activations, frozenset(['Relu', 'Tanh']))

    def test_unknown_key_rejected(self):
        path = self._write_yaml({'providers': {'P': {'fastpath': True}}})
        with self.assertRaises(FusionConfigError):
            ProviderTable.from_yaml(path)

    def test_unknown_elem_type_rejected(self):
        with self.assertRaises(FusionConfigError):
            ProviderCapability.from_dict('P', {'input_elem_type': 'quaternion'})

    def test_bad_activation_list_rejected(self):
        with self.assertRaises(FusionConfigError):
            ProviderCapability.from_dict('P', {'activations': 'Relu'})

    def test_missing_file(self):
        with self.assertRaises(FusionConfigError):
            ProviderTable.from_yaml(os.path.join(PATTERN_DIR, 'missing.yaml'))


class TestProviderCompatibilityChecker(unittest.TestCase):
    """Tests for provider compatibility decisions"""

    def setUp(self):
        self.graph = load(conv_activation_model("Relu"), CPU_EXECUTION_PROVIDER)
        self.conv = self.graph.find_node("conv")
        self.act = self.graph.find_node("act")

    def test_empty_set_allows_all(self):
        checker = ProviderCompatibilityChecker()
        self.assertTrue(checker.is_supported_provider(self.conv))

    def test_restricted_set(self):
        checker = ProviderCompatibilityChecker([CUDA_EXECUTION_PROVIDER])
        self.assertFalse(checker.is_supported_provider(self.conv))
        self.conv.execution_provider = CUDA_EXECUTION_PROVIDER
        self.assertTrue(checker.is_supported_provider(self.conv))

    def test_same_provider(self):
        self.assertTrue(ProviderCompatibilityChecker.same_provider(self.conv, self.act))
        self.act.execution_provider = CUDA_EXECUTION_PROVIDER
        self.assertFalse(ProviderCompatibilityChecker.same_provider(self.conv, self.act))

    def test_capability_for(self):
        checker = ProviderCompatibilityChecker()
        self.assertFalse(checker.capability_for(self.conv).fast_path)
        self.conv.execution_provider = CUDA_EXECUTION_PROVIDER
        self.assertTrue(checker.capability_for(self.conv).fast_path)


if __name__ == '__main__':
    unittest.main(verbosity=2)
