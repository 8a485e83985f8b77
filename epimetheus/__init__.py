"""Epimetheus: read-only health endpoints for a node-agent managed cluster."""

__version__ = "1.0.0"
