"""Command-line interface for apkg."""
