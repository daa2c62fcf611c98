"""
partitioned_ann CLI Entrypoint

Commands:
    partitioned-ann demo     Build a partially indexed table and run a search
    partitioned-ann version  Show version info
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from typing import NoReturn

from partitioned_ann.core.config import ServiceConfig


def main() -> NoReturn:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="partitioned-ann",
        description="Partitioned ANN vector index lifecycle and distributed top-k search",
    )
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: PARTITIONED_ANN_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Log line format (default: json unless PARTITIONED_ANN_LOG_JSON=0)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    demo_parser = subparsers.add_parser("demo", help="Run the partitioned search demo")
    demo_parser.add_argument(
        "--index-type",
        choices=["flat", "ivf", "hnsw"],
        default="ivf",
        help="Index type to build (default: ivf)",
    )
    demo_parser.add_argument(
        "--rows",
        type=int,
        default=200,
        help="Rows per partition (default: 200)",
    )
    demo_parser.add_argument(
        "--dimension",
        type=int,
        default=16,
        help="Embedding dimension (default: 16)",
    )
    demo_parser.add_argument("--k", type=int, default=5, help="Results per query (default: 5)")
    demo_parser.add_argument("--seed", type=int, default=7, help="Random seed")

    subparsers.add_parser("version", help="Show version info")

    args = parser.parse_args()

    config = load_config(args)
    if error := config.validate():
        parser.error(error)

    from partitioned_ann.observability.logging import LogLevel, setup_logging
    setup_logging(LogLevel.parse(config.log_level), json_output=config.log_json)

    if args.command == "demo":
        _run_demo(args, config)
    elif args.command == "version":
        print(_get_version())
    else:
        parser.print_help()
    sys.exit(0)


def load_config(args: argparse.Namespace) -> ServiceConfig:
    """Environment settings (PARTITIONED_ANN_*) with command-line flags applied on top."""
    config = ServiceConfig.from_env()
    if args.log_level is not None:
        config = replace(config, log_level=args.log_level)
    if args.log_format is not None:
        config = replace(config, log_json=args.log_format == "json")
    return config


def _get_version() -> str:
    from partitioned_ann import __version__
    return __version__


def _run_demo(args: argparse.Namespace, config: ServiceConfig) -> None:
    """Index three daily partitions, add a fourth, search across all four."""
    import numpy as np

    from partitioned_ann.core.types import PartitionPredicate, ScalarType, TableSchema, VectorType
    from partitioned_ann.session import VectorSearchSession

    rng = np.random.default_rng(args.seed)
    session = VectorSearchSession(config=config)
    session.store.create_table(TableSchema(
        name="docs",
        columns={
            "doc_id": ScalarType("int64"),
            "embedding": VectorType(args.dimension),
            "ds": ScalarType("date"),
        },
        partition_keys=("ds",),
    )).unwrap_or_raise()

    def load(day: int) -> None:
        base = day * 10_000
        rows = [
            {"doc_id": base + i, "embedding": rng.standard_normal(args.dimension).tolist()}
            for i in range(args.rows)
        ]
        session.store.insert_rows("docs", {"ds": f"2026-01-0{day}"}, rows).unwrap_or_raise()

    for day in (1, 2, 3):
        load(day)

    options = {"num_lists": 8} if args.index_type == "ivf" else {}
    created = session.create_vector_index(
        "docs_idx", "docs", "doc_id", "embedding",
        index_type=args.index_type,
        distance_metric="cosine",
        index_options=options,
        partitioned_by=["ds"],
        updating_for=PartitionPredicate.between("ds", "2026-01-01", "2026-01-03"),
    )
    print(f"Created {created.definition.name} ({created.index_id})")
    if created.report is not None:
        print(f"  built: {', '.join(str(p) for p in created.report.built)}")

    load(4)
    print("Added partition ds=2026-01-04 (not indexed)")

    if args.index_type == "ivf":
        session.set_option("vector_index", "docs_idx", num_probes=8)

    where = PartitionPredicate.between("ds", "2026-01-01", "2026-01-04")
    queries = {f"q{i}": rng.standard_normal(args.dimension).tolist() for i in range(3)}

    print("\nPlan:")
    for line in session.explain("docs", "doc_id", "embedding", queries, k=args.k, where=where):
        print(f"  {line}")

    response = session.vector_search("docs", "doc_id", "embedding", queries, k=args.k, where=where)
    print("\nResults:")
    for result in response:
        scored = ", ".join(f"{cid}:{score:.4f}" for cid, score in zip(result.ids, result.scores))
        print(f"  {result.query_id}: {scored}")
    print(f"\nelapsed: {response.metadata.elapsed_ms:.2f}ms")


if __name__ == "__main__":
    main()
