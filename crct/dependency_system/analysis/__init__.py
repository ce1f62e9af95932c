"""Project-wide analysis."""
