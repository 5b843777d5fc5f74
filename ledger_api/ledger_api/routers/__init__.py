"""API router modules for the ledger service."""

from __future__ import annotations

from ledger_api.routers import attribution, health, metrics, reconciliation, registrations, usage

__all__ = [
    "attribution",
    "health",
    "metrics",
    "reconciliation",
    "registrations",
    "usage",
]
