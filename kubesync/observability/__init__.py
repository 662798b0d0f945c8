"""Logging, metrics and the status event stream."""
