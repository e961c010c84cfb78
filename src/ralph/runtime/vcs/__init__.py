"""Version-control access for the iteration loop."""

from .jj import JJClient, NotARepositoryError, VcsError, VcsNotFoundError

__all__ = ["JJClient", "VcsError", "VcsNotFoundError", "NotARepositoryError"]
