"""
Observability for the check-in engine.

This module provides:
- Metrics collection with Prometheus
"""

__all__ = ["metrics"]
