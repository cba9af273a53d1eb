"""Bookwarden: book request approval and fulfillment tracking."""

__version__ = "0.1.0"
