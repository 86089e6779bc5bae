"""Shared helpers: validation, output parsing and tool error handling."""
