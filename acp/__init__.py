"""Automatic captive portal login daemon."""

__version__ = "0.3.0"
