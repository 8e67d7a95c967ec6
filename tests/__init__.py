"""Test suite for worktree-orchestrator."""
