"""CV ingestion pipeline for the HR platform."""

__version__ = "1.0.0"
