"""
Usage Meter.

Aggregates append-only usage logs into hourly, daily, project and
session cost summaries.
"""

__version__ = "0.1.0"
