"""Policy engines, event stream management and transaction queries for a transaction manager."""

__version__ = "0.1.0"