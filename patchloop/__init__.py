"""
PATCHLOOP — orchestration core for autonomous code modification.

Gathers repository context for a goal, asks a generator for a patch,
verifies it with a build/check tool, and retries under a bounded policy
while checkpointing repository state for rollback.
"""

from patchloop.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
