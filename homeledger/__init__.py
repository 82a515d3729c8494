"""Home Ledger - household money movement consistency layer."""

__version__ = "1.0.0"
