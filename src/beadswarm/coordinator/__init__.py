"""Matching, completion detection and the watch loop."""
