"""Media services."""
