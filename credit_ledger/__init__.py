"""Points ledger and cross-identity resolution service."""

__version__ = "1.0.0"
