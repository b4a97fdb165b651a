"""Duty Pharmacy Registry — multi-source reconciliation and freshness engine."""

__version__ = "0.1.0"
