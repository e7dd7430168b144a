"""
Order Benchmarks

Versioned snapshots of what an order requested, and comparisons of the
live order against them.
"""

from .comparison import (
    BenchmarkComparator,
    build_comparison,
    classify_missing,
    completion,
    is_delivered,
    price_change,
)
from .snapshot import BenchmarkSnapshotter, build_benchmark_data, coerce_reason

__all__ = [
    "BenchmarkComparator",
    "BenchmarkSnapshotter",
    "build_benchmark_data",
    "build_comparison",
    "classify_missing",
    "coerce_reason",
    "completion",
    "is_delivered",
    "price_change",
]
