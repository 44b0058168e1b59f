"""taskflow: task tracking with owner/admin authorization and pushed change events."""

__version__ = "0.1.0"
