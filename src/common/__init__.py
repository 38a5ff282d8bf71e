"""
Common utilities for the interactive-state provider.

Modules:
- documents: async HTTP client for shared documents and run state lookups
- rewriter: sensor-interactive URL rewriting for loaded states
"""

__all__ = [
    "documents",
    "rewriter",
]
