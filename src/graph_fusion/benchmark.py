"""
Benchmark Module

Runs an original and a fused model side by side with ONNX Runtime to compare
latency and check that the fused model computes the same outputs.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np
import onnx
import onnxruntime as ort

logger = logging.getLogger(__name__)

_ORT_TYPES = {
    'tensor(float)': np.float32,
    'tensor(double)': np.float64,
    'tensor(float16)': np.float16,
    'tensor(int64)': np.int64,
    'tensor(int32)': np.int32,
    'tensor(bool)': np.bool_,
}


@dataclass
class ComparisonResult:
    """Results from comparing an original model with its fused version"""
    original_ms: float
    fused_ms: float
    speedup: float
    max_abs_diff: float

    original_node_count: int
    fused_node_count: int

    iterations: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timing': {
                'original_ms': self.original_ms,
                'fused_ms': self.fused_ms,
                'speedup': self.speedup,
            },
            'graph_stats': {
                'original_node_count': self.original_node_count,
                'fused_node_count': self.fused_node_count,
            },
            'max_abs_diff': self.max_abs_diff,
            'iterations': self.iterations,
            'timestamp': self.timestamp,
        }

    def __str__(self) -> str:
        return (
            f"Fusion Benchmark Comparison\n"
            f"===========================\n"
            f"  Original ({self.original_node_count} nodes): {self.original_ms:.3f}ms\n"
            f"  Fused ({self.fused_node_count} nodes): {self.fused_ms:.3f}ms\n"
            f"  Speedup: {self.speedup:.2f}x\n"
            f"  Max abs output difference: {self.max_abs_diff:.3g}"
        )


def create_session(model: onnx.ModelProto,
                   providers: Optional[List[str]] = None) -> ort.InferenceSession:
    """Create a session with ONNX Runtime's own graph optimizations disabled"""
    sess_options = ort.SessionOptions()
    sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_DISABLE_ALL
    return ort.InferenceSession(model.SerializeToString(), sess_options,
                                providers=providers or ['CPUExecutionProvider'])


def random_inputs(session: ort.InferenceSession, seed: int = 0) -> Dict[str, np.ndarray]:
    """Random feeds for every session input; symbolic dimensions become 1"""
    rng = np.random.default_rng(seed)
    feeds = {}
    for model_input in session.get_inputs():
        dtype = _ORT_TYPES.get(model_input.type)
        if dtype is None:
            raise ValueError(f"Unsupported input type {model_input.type} for '{model_input.name}'")
        shape = [dim if isinstance(dim, int) and dim > 0 else 1 for dim in model_input.shape]
        if np.issubdtype(dtype, np.floating):
            feeds[model_input.name] = rng.standard_normal(shape).astype(dtype)
        else:
            feeds[model_input.name] = np.zeros(shape, dtype=dtype)
    return feeds


def _max_abs_diff(expected: List[np.ndarray], actual: List[np.ndarray]) -> float:
    diff = 0.0
    for a, b in zip(expected, actual):
        a = np.asarray(a, dtype=np.float64)
        b = np.asarray(b, dtype=np.float64)
        if a.shape != b.shape:
            raise ValueError(f"Output shape mismatch: {a.shape} vs {b.shape}")
        if a.size:
            diff = max(diff, float(np.max(np.abs(a - b))))
    return diff


def _time_session(session: ort.InferenceSession,
                  feeds: Dict[str, np.ndarray],
                  warmup: int,
                  iterations: int) -> float:
    for _ in range(warmup):
        session.run(None, feeds)

    start = time.perf_counter()
    for _ in range(iterations):
        session.run(None, feeds)
    return (time.perf_counter() - start) / max(iterations, 1) * 1000


def compare_models(original: onnx.ModelProto,
                   fused: onnx.ModelProto,
                   inputs: Optional[Dict[str, np.ndarray]] = None,
                   warmup: int = 10,
                   iterations: int = 100,
                   providers: Optional[List[str]] = None) -> ComparisonResult:
    """
    Benchmark original vs fused models and compare their outputs.

    Args:
        original: unfused model
        fused: fused model
        inputs: feeds to use; random feeds are generated if None
        warmup: warmup runs per model
        iterations: timed runs per model
        providers: ONNX Runtime providers (CPU if None)

    Returns:
        ComparisonResult
    """
    original_sess = create_session(original, providers)
    fused_sess = create_session(fused, providers)

    feeds = inputs if inputs is not None else random_inputs(original_sess)

    max_diff = _max_abs_diff(original_sess.run(None, feeds), fused_sess.run(None, feeds))

    original_ms = _time_session(original_sess, feeds, warmup, iterations)
    fused_ms = _time_session(fused_sess, feeds, warmup, iterations)

    result = ComparisonResult(
        original_ms=original_ms,
        fused_ms=fused_ms,
        speedup=original_ms / fused_ms if fused_ms > 0 else 1.0,
        max_abs_diff=max_diff,
        original_node_count=len(original.graph.node),
        fused_node_count=len(fused.graph.node),
        iterations=iterations,
    )
    logger.info(f"Benchmark: {original_ms:.3f}ms -> {fused_ms:.3f}ms, max diff {max_diff:.3g}")
    return result
