"""Logging and metrics infrastructure."""
