"""Unit tests for the vote API building blocks."""
