"""HTTP service for the tenant usage ledger."""

__version__ = "0.4.0"
