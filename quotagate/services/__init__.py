"""Quota services."""
