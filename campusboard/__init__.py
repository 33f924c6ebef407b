"""Campus board client: anonymous posts and direct message inbox sync."""

__version__ = "0.3.0"
