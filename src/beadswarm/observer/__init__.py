"""Pane observation over tmux."""
