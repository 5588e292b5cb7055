"""Command-line interface for certkeeper."""
