"""
Memory Mesh Core - records, persistence and the memory store.
"""

from .models import Expertise, Pattern, Preference, Project
from .store import MemoryStore

__all__ = [
    "MemoryStore",
    "Pattern",
    "Expertise",
    "Preference",
    "Project",
]
