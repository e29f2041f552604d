"""Vote confirmation service."""
