"""Usage Ledger - idempotent ingestion of usage exports."""

__version__ = "0.1.0"
