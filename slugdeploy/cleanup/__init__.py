"""
Leftover detection for decommissioned projects.
"""

from .models import FoundResource
from .sweep import find_leftovers, list_tagged_resources

__all__ = [
    "FoundResource",
    "find_leftovers",
    "list_tagged_resources",
]
