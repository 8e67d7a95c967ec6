"""Integration tests against real temporary git repositories."""
