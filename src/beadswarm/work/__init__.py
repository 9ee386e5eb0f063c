"""Adapters over the external work prioritizer."""
