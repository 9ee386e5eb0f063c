"""Durable per-session assignment storage."""
