"""Spreadsheet -> PostgreSQL import reconciler for the warehouse dashboard tables."""

__version__ = "0.1.0"
