"""Stipend — recurring stablecoin stipends for a roster of recipients."""

__version__ = "0.1.0"
