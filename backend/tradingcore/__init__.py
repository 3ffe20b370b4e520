"""Autonomous trading core: signal aggregation, risk sizing and order execution."""

__version__ = "1.0.0"
