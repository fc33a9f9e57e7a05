"""Metadata-driven media organizer."""

__version__ = "0.3.0"
