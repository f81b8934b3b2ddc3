"""Durable render job queue for quote reels."""

__version__ = "0.1.0"
