"""feed-sync: RSS/Atom ingestion and synchronisation engine."""

__version__ = "0.3.0"
