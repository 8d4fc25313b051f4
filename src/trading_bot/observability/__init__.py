"""Observability: logging setup and error telemetry."""
