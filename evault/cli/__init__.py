"""Command-line interface for the evidence vault."""
