"""Adapters for external systems: page fetching and the metadata extraction service."""
