"""
worktree-orchestrator

Coordinates worker agents that edit one git repository concurrently. Each agent
works in its own worktree under an ownership map checked before spawning; every
workspace must end in a commit, publish a manifest, and pass review before the
accepted commits are folded into the target branch as one atomic merge.

Importing the package has no side effects; configure logging explicitly with
``worktree_orchestrator.observability.configure_logging``.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
