"""Bead assignment engine for multi-agent tmux sessions."""

__version__ = "0.1.0"
