"""Storefront order and inventory consistency engine."""

__version__ = "0.1.0"
