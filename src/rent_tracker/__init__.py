"""Rent Tracker: transaction classification and payment reconciliation."""

__version__ = "0.1.0"
