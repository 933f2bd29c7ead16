"""
Quorum Tools - operator services around the reconciliation engine

Configuration, structured logging, Prometheus metrics and the HTTP API.
"""

__version__ = "0.1.0"
