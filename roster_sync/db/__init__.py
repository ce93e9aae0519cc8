"""Document store implementations."""
