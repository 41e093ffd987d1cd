"""Activity Sync - aggregates developer activity across providers into a day-indexed view."""

__version__ = "0.4.0"
