"""Monitoring and alerting engine for registered HTTP endpoints."""

__version__ = "0.1.0"
