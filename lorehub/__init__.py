"""LoreHub.

A local store of project knowledge (lores) grouped into realms and
workspaces, replicated across devices through plain git repositories.
"""

from lorehub._sync import GitSyncAdapter
from lorehub._tracking import ChangeTracker
from lorehub.storage import LoreStore

__version__ = "0.1.0"
__all__ = ["ChangeTracker", "GitSyncAdapter", "LoreStore"]
