"""Topology-aware bulk key operations for Redis-compatible deployments."""

__version__ = "0.1.0"
