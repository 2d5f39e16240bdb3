"""
Command line entry point: fuse conv-activation chains in an ONNX model.
"""

import argparse
import logging
import sys
from typing import List, Optional

import onnx

from .benchmark import compare_models
from .errors import FusionError
from .fuser import fuse_model
from .providers import ProviderTable

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='graph-fusion',
        description='Fuse Conv + activation chains in an ONNX model')
    parser.add_argument('model', help='ONNX model path')
    parser.add_argument('-o', '--output', required=True, help='Output path for fused model')
    parser.add_argument('--provider', default='',
                        help='Execution provider assigned to every node (default: unassigned)')
    parser.add_argument('--allow-provider', action='append', default=[], dest='allowed_providers',
                        help='Only fuse nodes on this provider (repeatable; default: all)')
    parser.add_argument('--config', help='YAML provider capability table')
    parser.add_argument('--max-iterations', type=int, default=10,
                        help='Maximum fusion iterations')
    parser.add_argument('--benchmark', action='store_true',
                        help='Benchmark before/after fusion with ONNX Runtime')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        table = ProviderTable.from_yaml(args.config) if args.config else None
        model = onnx.load(args.model)
        fused, stats = fuse_model(
            model,
            execution_provider=args.provider,
            compatible_execution_providers=args.allowed_providers,
            provider_table=table,
            max_iterations=args.max_iterations,
        )
    except FusionError as e:
        logger.error(f"Fusion failed: {e}")
        return 1

    onnx.save(fused, args.output)

    print(f"Fused model saved to: {args.output}")
    print(f"  Nodes: {len(model.graph.node)} -> {len(fused.graph.node)}")
    print(f"  Fusions: {stats['total_fusions']} in {stats['iterations']} iterations")
    for pass_name, kinds in stats['by_pass'].items():
        for kind, count in sorted(kinds.items()):
            print(f"    {pass_name}.{kind}: {count}")

    if args.benchmark:
        print()
        print(compare_models(model, fused))

    return 0


if __name__ == '__main__':
    sys.exit(main())
