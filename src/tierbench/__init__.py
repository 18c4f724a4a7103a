"""
tierbench - Benchmark two variants of a workload.

Drive load at baseline and candidate, capture the runtime's optimization
trace, and decide whether the candidate improved or regressed.
"""

from tierbench.correlate import correlate
from tierbench.orchestrator import run_comparison, run_variant
from tierbench.parser import parse_line, parse_lines

__version__ = "0.1.0"
__all__ = [
    "correlate",
    "parse_line",
    "parse_lines",
    "run_comparison",
    "run_variant",
    "__version__",
]
