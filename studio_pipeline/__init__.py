"""Ingestion pipeline orchestrator for the studio analytics dashboard."""

__version__ = "0.1.0"
