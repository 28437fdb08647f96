"""Shared pure helpers used across services."""
