"""Command-line entry points for coverscan."""
