"""dedup-store: deduplicating content store with reference counting."""

__version__ = "0.1.0"
