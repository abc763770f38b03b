"""Bulk document dispatch and pluggable document storage."""

__version__ = "0.1.0"
