"""Shared helpers used across the reader packages."""
