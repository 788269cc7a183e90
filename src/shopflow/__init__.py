"""Scripted storefront walk: search, pick a product, stop at sign-in."""

__version__ = "0.3.0"
