"""Configuration loading for Usage Meter."""
