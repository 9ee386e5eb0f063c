"""YAML configuration for beadswarm."""
