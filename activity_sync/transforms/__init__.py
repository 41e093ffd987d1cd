"""Pure transforms over unified activities: heatmaps, tickets, display grouping."""

from .collapsing import ActivityGroup, collapse
from .heatmap import generate_buckets, merge_buckets
from . import tickets

__all__ = [
    "ActivityGroup",
    "collapse",
    "generate_buckets",
    "merge_buckets",
    "tickets",
]
