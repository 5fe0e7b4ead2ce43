"""
Core modules for Usage Meter.

This package contains the event parser, the time-bucketing aggregator,
session reconstruction and spending limit checks.
"""
