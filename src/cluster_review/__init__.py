"""Review backend for clustered security events.

Subpackages (``api``, ``infrastructure``, ``models``, ``tasks``) are namespace
packages; import the submodule you need, e.g. ``cluster_review.infrastructure.db``.
"""

__version__ = "0.1.0"

__all__ = ["config", "store", "mirror", "query", "registry"]
