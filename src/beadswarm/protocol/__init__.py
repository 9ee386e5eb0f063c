"""Filesystem protocol: data types and atomic IO."""
