"""CV ingestion pipeline: scheduling, per-source rate control, dedup and quality scoring."""

__version__ = "0.1.0"
