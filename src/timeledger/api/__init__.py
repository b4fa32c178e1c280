"""HTTP API for calendar sync."""
