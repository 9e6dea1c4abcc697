"""Willow Coffee loyalty backend: menu, orders, stars ledger and bot."""

__version__ = "1.2.0"
