"""Transit-station reconciliation and coordinate enrichment."""

__version__ = "0.1.0"
