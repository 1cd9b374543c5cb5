"""Command-line interface for bookvault."""
