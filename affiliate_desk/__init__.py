"""Affiliate hierarchy and commission settlement desk."""

__version__ = "0.1.0"
