"""Command-line interface for Doc Vector Search."""
