"""
Storage layer for Usage Meter.

Holds the data models, the per-file ingestion cache and the snapshot store.
"""
