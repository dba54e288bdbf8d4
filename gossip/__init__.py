"""Cluster membership building blocks: clocks, metadata, node tracking, message history, packets, framed streams and leader election."""

__version__ = "0.1.0"