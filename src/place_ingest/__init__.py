"""Continuous place ingestion and enrichment."""

__version__ = "0.1.0"
