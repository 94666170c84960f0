"""Pre-call connectivity diagnostics."""

__version__ = "1.0.0"
