"""Logging setup and error report export."""
