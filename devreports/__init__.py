"""Device message ingestion, PDF reporting and HTTP query service."""

__version__ = "1.0.0"