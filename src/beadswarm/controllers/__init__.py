"""Single-shot assignment operations and result envelopes."""
