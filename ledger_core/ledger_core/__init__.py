"""Tenant usage ledger: attribution capture and late-event billing reconciliation."""

__version__ = "0.4.0"
