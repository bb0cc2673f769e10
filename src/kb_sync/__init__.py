"""Sitemap-driven source synchronization engine for knowledge bases."""

__version__ = "0.1.0"
