"""Background services for the ledger API."""
