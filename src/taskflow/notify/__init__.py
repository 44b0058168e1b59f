"""Notification sinks (log, Matrix)."""
