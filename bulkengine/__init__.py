"""
Bulk Analysis Engine

Core of the guest-post order system:
1. Normalizes and deduplicates candidate domains per client and project
2. Tracks domain qualification driven by AI evidence and human review
3. Snapshots confirmed orders as versioned benchmarks
4. Compares live orders against their benchmark
"""

__version__ = "0.1.0"
