"""Core types, state machine, locks and expiry arithmetic."""
