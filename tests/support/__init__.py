"""Test doubles and repository helpers shared across suites."""
