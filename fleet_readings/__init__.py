"""Meter reading reconciliation, gap detection and zero backfill for the fleet dashboard."""

__version__ = "0.1.0"
