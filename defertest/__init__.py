"""Deferred-cleanup timing demo exposing Prometheus counters and summaries."""

from defertest.version import __version__

__all__ = ["__version__"]
